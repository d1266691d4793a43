"""
Scene runner - drives the Agent through a parsed scene.

- Stage setup: backdrop, app window centering, viewport, target discovery
- Sequence: one handler per action, strictly in order
- Recording: screen capture plus the audio timeline
- Teardown: everything the run put on screen is removed again, on success,
  failure or cancellation
"""
import asyncio
from pathlib import Path
from typing import Callable, Optional
from dataclasses import dataclass, field

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config.settings import (
    AGENT_PORT, COMMAND_TIMEOUT, SCREEN_WIDTH, SCREEN_HEIGHT, WINDOW_SETTLE_MS,
    agent_url, get_output_path
)
from .audio import AudioManager
from .errors import TargetNotFound
from .hooks import Hooks
from .protocol import ProtocolClient
from .recorder import Recorder
from .scenes import Action, ActionType, ParsedScene, parse_duration
from .targets import Bounds, TargetResolver
from .telemetry import TelemetryClient
from .validation import ValidationService

CLICK_MOVE_DURATION = 0.3       # seconds
NAVIGATE_MOVE_DURATION = 0.4
NAVIGATE_WAIT_MS = 400


@dataclass
class SetupState:
    """What the run has put on screen, so teardown can take it down again."""
    backdrop: bool = False
    cursor: bool = False
    viewport: bool = False
    recording: bool = False
    record_indicator: bool = False
    labels: set = field(default_factory=set)
    keys: bool = False
    typer: bool = False
    camera: bool = False

    def any_active(self) -> bool:
        return any([
            self.backdrop, self.cursor, self.viewport, self.recording,
            self.record_indicator, self.labels, self.keys, self.typer, self.camera,
        ])


class SceneRunner:
    """Runs one parsed scene against the Agent."""

    def __init__(self, scene: ParsedScene, port: int = AGENT_PORT, verbose: bool = False,
                 dry_run: bool = False, validate: bool = True, timeout: float = COMMAND_TIMEOUT,
                 client: Optional[ProtocolClient] = None,
                 recorder: Optional[Recorder] = None,
                 telemetry: Optional[TelemetryClient] = None,
                 validator: Optional[ValidationService] = None,
                 hooks: Optional[Hooks] = None,
                 console: Optional[Console] = None,
                 sleep: Callable = asyncio.sleep):
        self.scene = scene
        self.verbose = verbose
        self.dry_run = dry_run
        self.console = console or Console()
        self._sleep_fn = sleep

        self.client = client or ProtocolClient(
            agent_url(port), timeout=timeout, dry_run=dry_run, log=self._log)
        self.telemetry = telemetry or TelemetryClient()
        self.validator = validator or ValidationService(
            self.telemetry,
            enabled=validate and not dry_run,
            sleep=sleep,
            log=self._log,
        )
        self.recorder = recorder or Recorder()
        self.hooks = hooks or Hooks()

        self.audio = AudioManager(
            send=self.client.send,
            sleep=lambda seconds: self._sleep(seconds * 1000),
            log=self._log,
        )
        self.audio.configure(scene.audio, scene.base_path)

        self.resolver = TargetResolver(scene.views)
        self.app_targets: dict = {}
        self.viewport_region: Optional[dict] = None
        self.current_recording: Optional[str] = None
        self.state = SetupState()

        self.recorder.on("started", self._on_recording_started)
        self.recorder.on("stopped", lambda info: self._log(f"🎬 Recording stopped: {info['output']}"))
        self.recorder.on("error", lambda err: self._log(f"🎬 Recording error: {err}"))

        self._handlers = {
            ActionType.CURSOR_SHOW: self._cursor_show,
            ActionType.CURSOR_HIDE: self._cursor_hide,
            ActionType.CURSOR_MOVE_TO: self._cursor_move_to,
            ActionType.CURSOR_CLICK: self._cursor_click,
            ActionType.CLICK: self._click,
            ActionType.WAIT: self._wait,
            ActionType.RECORD: self._record,
            ActionType.NAVIGATE: self._navigate,
            ActionType.LABEL: self._label,
            ActionType.LABEL_UPDATE: self._label_update,
            ActionType.LABEL_HIDE: self._label_hide,
            ActionType.USE: self._use,
            ActionType.TYPER_TYPE: self._typer_type,
            ActionType.TYPER_HIDE: self._typer_hide,
            ActionType.TYPER_CLEAR: self._typer_clear,
            ActionType.INPUT_TYPE: self._input_type,
            ActionType.INPUT_KEYS: self._input_keys,
            ActionType.KEYS_SHOW: self._keys_show,
            ActionType.KEYS_HIDE: self._keys_hide,
            ActionType.AUDIO_PLAY: self._audio_play,
            ActionType.AUDIO_STOP: self._audio_stop,
            ActionType.AUDIO_VOLUME: self._audio_volume,
            ActionType.VOICE_PLAY: self._voice_play,
            ActionType.VOICE_STOP: self._voice_stop,
            ActionType.CAMERA_SHOW: self._camera_show,
            ActionType.CAMERA_HIDE: self._camera_hide,
            ActionType.CAMERA_SET: self._camera_set,
            ActionType.ZOOM: self._zoom,
            ActionType.ZOOM_RESET: self._zoom_reset,
        }

    # ─── Helpers ────────────────────────────────────────────────────────

    def _log(self, msg: str, data: Optional[dict] = None):
        """Verbose-only progress output."""
        if not self.verbose:
            return
        line = f"[scene] {msg}"
        if data:
            line += f" {data}"
        self.console.print(line, markup=False, highlight=False)

    async def _sleep(self, ms: float):
        """Sleep for remote work that does not report completion."""
        self._log(f"⏱ wait {round(ms)}ms")
        if self.dry_run:
            return
        await self._sleep_fn(ms / 1000)

    def _on_recording_started(self, info: dict):
        self._log(f"🎬 Recording started: {info['output']}")
        region = info.get("region")
        if region:
            self._log(f"🎬 Region: x={region['x']}, y={region['y']}, {region['width']}x{region['height']}")
        else:
            self._log("🎬 Region: full screen")

    async def _send_quietly(self, action: str, params: Optional[dict] = None):
        """Send during teardown; a failing layer must not block the rest."""
        try:
            await self.client.send(action, params)
        except Exception as e:
            self._log(f"⚠ {action} failed during teardown: {e}")

    async def _call_hook_quietly(self, name: str, *args):
        """Error hooks must not replace the scene error or skip teardown."""
        try:
            await self.hooks.call(name, *args)
        except Exception as e:
            self._log(f"⚠ {name} hook failed: {e}")

    async def _move_and_click(self, x: float, y: float, duration: float = CLICK_MOVE_DURATION):
        await self.client.send("cursor.moveTo", {"x": x, "y": y, "duration": duration})
        await self._sleep(duration * 1000 + 50)
        await self.client.send("cursor.click")

    # ─── Run ────────────────────────────────────────────────────────────

    async def run(self):
        """
        Run the whole scene.

        Any error aborts the remaining sequence; teardown runs before the
        error is re-raised.
        """
        self.console.print(f"\n▶ Running scene: {escape(self.scene.scene.name)}\n")

        await self.hooks.call("scene:before-run", self.scene)

        # Fresh telemetry for validation
        await self.validator.reset()

        try:
            await self.client.connect()
        except Exception as e:
            self.console.print(f"[red]✗ Scene failed: {escape(str(e))}[/red]")
            raise

        try:
            await self.setup_stage()

            for index, action in enumerate(self.scene.sequence):
                await self.hooks.call("scene:action-before", action, index)

                # Timeline visualization in the Agent's control panel
                self.client.notify("timeline.step", {"index": index})

                try:
                    await self.execute_action(action)
                except Exception as e:
                    await self._call_hook_quietly("scene:action-error", action, index, e)
                    raise

                await self.hooks.call("scene:action-after", action, index)

            await self.teardown()

            self.console.print("\n[green]✓ Scene complete[/green]")
            await self.hooks.call("scene:complete", self.scene)
            self.print_validation_summary()

        except (Exception, asyncio.CancelledError) as err:
            if isinstance(err, Exception):
                await self._call_hook_quietly("scene:error", self.scene, err)

            self.console.print("\n[yellow]⚠ Error during scene execution, cleaning up...[/yellow]")
            try:
                await self.teardown()
            except Exception as teardown_err:
                self._log(f"⚠ Teardown error: {teardown_err}")
                if self.recorder.is_recording():
                    self.recorder.force_stop()

            self.print_validation_summary()
            reason = str(err) or type(err).__name__
            self.console.print(f"[red]✗ Scene failed: {escape(reason)}[/red]")
            raise

        finally:
            if self.recorder.is_recording():
                self._log("⚠ Force stopping recorder in finally block")
                self.recorder.force_stop()
            await self.client.close()

    # ─── Stage ──────────────────────────────────────────────────────────

    async def setup_stage(self):
        """Prepare backdrop, app window, viewport and target discovery."""
        stage, app = self.scene.stage, self.scene.app

        if stage.backdrop:
            await self.client.send("stage.backdrop", {"show": True})
            self.state.backdrop = True

        if app:
            width, height = app.width, app.height

            center_result = {}
            try:
                center_result = await self.client.send("stage.center", {
                    "app": app.name,
                    "width": width,
                    "height": height,
                })
                # Window animations finish after the reply
                await self._sleep(WINDOW_SETTLE_MS)
            except Exception as e:
                self._log(f"⚠ stage.center failed (continuing anyway): {e}")

            bounds = center_result.get("bounds") if isinstance(center_result, dict) else None
            if bounds:
                self.resolver.bounds = Bounds(
                    x=bounds["x"], y=bounds["y"],
                    width=bounds["width"], height=bounds["height"],
                )
                self._log(f"📐 Using actual bounds from agent: {bounds}")
            else:
                self.resolver.bounds = Bounds.centered(SCREEN_WIDTH, SCREEN_HEIGHT, width, height)
                self._log(f"📐 No bounds from agent, assuming screen {SCREEN_WIDTH}x{SCREEN_HEIGHT}")

            if stage.viewport:
                viewport = self.resolver.bounds.padded(stage.viewport.padding)
                self._log(f"📐 Viewport: {viewport}")
                await self.client.send("viewport.set", viewport)
                await self.client.send("viewport.show")
                self.state.viewport = True
                self.viewport_region = viewport

                presenter = self.scene.scene.presenter
                if presenter and presenter.enabled:
                    await self._send_quietly("camera.viewport", viewport)

            self.app_targets = await self.telemetry.get_targets()
            if self.app_targets:
                self._log(f"📍 Loaded {len(self.app_targets)} targets from {app.name}")

            self.resolver.offset = app.target_offset
            if any(app.target_offset):
                self._log(f"📍 Target offset: {app.target_offset}")

        presenter = self.scene.scene.presenter
        if presenter and presenter.enabled:
            params = {}
            if presenter.position:
                params["position"] = presenter.position
            if presenter.size is not None:
                params["size"] = presenter.size
            await self.client.send("camera.show", params)
            self.state.camera = True
            self._log("📹 Camera enabled with presenter config")

    # ─── Actions ────────────────────────────────────────────────────────

    async def execute_action(self, action: Action):
        """Run one action; unknown actions are skipped."""
        handler = self._handlers.get(action.type)
        if handler is None:
            self._log(f"⚠ Unknown action: {action.tag}", action.extra or None)
            return
        await handler(action)

    async def _cursor_show(self, action: Action):
        await self.client.send("cursor.show")
        self.state.cursor = True

    async def _cursor_hide(self, action: Action):
        await self.client.send("cursor.hide")
        self.state.cursor = False

    async def _cursor_move_to(self, action: Action):
        move = action.value or {}
        x, y = self.resolver.resolve_coordinates(move["x"], move["y"])
        duration = move.get("duration") or CLICK_MOVE_DURATION
        await self.client.send("cursor.moveTo", {"x": x, "y": y, "duration": duration})
        # The Agent replies before the animation finishes
        await self._sleep(duration * 1000 + 50)

    async def _cursor_click(self, action: Action):
        await self.client.send("cursor.click")

    async def _click(self, action: Action):
        target = action.value

        if isinstance(target, dict) and "x" in target:
            x, y = self.resolver.resolve_coordinates(target["x"], target["y"])
            await self._move_and_click(x, y)
        elif isinstance(target, str):
            await self._click_target(target)
        else:
            raise TargetNotFound(f"Invalid click target: {target!r}")

    async def _click_target(self, target: str):
        """
        Click a named target.

        Priority: a point published by the app, an app navigation entry,
        the sidebar navigation convention, then the scene's views.
        """
        direct = self.app_targets.get(target)
        if _is_point(direct):
            x = direct["x"] + self.resolver.offset[0]
            y = direct["y"] + self.resolver.offset[1]
            self._log(f"📍 Using app target: {target} → ({x}, {y})")
            await self._move_and_click(x, y)
            await self.validator.validate_action("click", target)
            return

        nav = self.app_targets.get(f"nav.{target}") or direct
        if _is_navigation(nav):
            self._log(f"🧭 Navigating to: {target}")
            await self.navigate_to_section(nav.get("section") or target)
            return

        section = target[len("sidebar."):] if target.startswith("sidebar.") else None
        if section and _is_navigation(self.app_targets.get(f"nav.{section}")):
            self._log(f"🧭 Using nav API for sidebar click: {section}")
            await self.navigate_to_section(section)
            return

        x, y = self.resolver.resolve_view_target(target)
        await self._move_and_click(x, y)

        if section:
            await self.validator.validate_action("navigate", section)

    async def navigate_to_section(self, section: str):
        """Ask the app to navigate itself, then validate the navigation."""
        if await self.telemetry.navigate(section):
            self._log(f"🧭 Navigated to {section} via HTTP")
            await self._sleep(300)
            await self.validator.validate_action("navigate", section)
            return

        self._log(f"⚠ Navigation endpoint unavailable for {section}")
        await self._sleep(500)

    async def _wait(self, action: Action):
        await self._sleep(parse_duration(action.value))

    async def _record(self, action: Action):
        if action.value == "start":
            await self._record_start()
        elif action.value == "stop":
            await self._record_stop()
        else:
            raise ValueError(f"record must be 'start' or 'stop', got {action.value!r}")

    async def _record_start(self):
        info = self.scene.scene
        mode = info.mode or "draft"
        output = str(get_output_path(mode, info.output))

        await self.hooks.call("recording:before-start", {"mode": mode, "name": info.output, "output": output})

        if self.dry_run:
            self._log(f"🎬 [dry-run] Would start recording to {output}")
            return

        await self.client.send("record.indicator", {"show": True})
        self.state.record_indicator = True

        self.audio.start_recording()
        self.current_recording = output

        await self.recorder.start(output=output, region=self.viewport_region, audio=False)
        self.state.recording = True

        await self.hooks.call("recording:started", output)

    async def _record_stop(self):
        await self.hooks.call("recording:before-stop")

        if self.dry_run:
            self._log("🎬 [dry-run] Would stop recording")
            return

        try:
            raw_path = await self.recorder.stop()
            self.state.recording = False

            await self.client.send("record.indicator", {"show": False})
            self.state.record_indicator = False

            final_path = raw_path
            if raw_path and self.audio.has_post_audio():
                mix_path = final_mix_path(raw_path)
                self._log(f"🎵 Mixing {len(self.audio.get_timeline())} audio events...")
                if self.audio.render_final_mix(raw_path, mix_path):
                    final_path = mix_path
                    self.console.print(f"📼 Recording saved: {escape(mix_path)}")
                else:
                    self.console.print(f"📼 Recording saved (no audio mix): {escape(raw_path)}")
            else:
                self.console.print(f"📼 Recording saved: {escape(str(raw_path))}")

            if final_path:
                await self.hooks.call("recording:stopped", final_path)
        finally:
            self.audio.reset()
            self.current_recording = None

    async def _navigate(self, action: Action):
        nav = action.value or {}
        through = nav["through"]
        wait_ms = parse_duration(nav["wait"]) if nav.get("wait") else NAVIGATE_WAIT_MS

        for item in nav.get("items") or []:
            x, y = self.resolver.resolve_view_target(f"{through}.{item}")
            await self._move_and_click(x, y, NAVIGATE_MOVE_DURATION)
            await self._sleep(wait_ms)

    async def _label(self, action: Action):
        name = action.value
        label_def = self.scene.labels.get(name)
        text = action.extra.get("text") or (label_def.text if label_def else None) or name
        position = self.resolver.resolve_label_position(label_def.position if label_def else None)
        await self.client.send("label.show", {"text": text, **position})
        self.state.labels.add(name)

    async def _label_update(self, action: Action):
        await self.client.send("label.update", {"text": action.value})

    async def _label_hide(self, action: Action):
        await self.client.send("label.hide")
        self.state.labels.clear()

    async def _use(self, action: Action):
        self._log(f"⚠ Component import not yet implemented: {action.value}")

    async def _typer_type(self, action: Action):
        params = action.value or {}
        text = params["text"]
        delay = params.get("delay", 0.05)
        await self.client.send("typer.type", {
            "text": text,
            "style": params.get("style", "default"),
            "delay": delay,
        })
        self.state.typer = True
        await self._sleep(len(text) * delay * 1000 + 200)

    async def _typer_hide(self, action: Action):
        await self.client.send("typer.hide")
        self.state.typer = False

    async def _typer_clear(self, action: Action):
        await self.client.send("typer.clear")
        self.state.typer = False

    async def _input_type(self, action: Action):
        params = action.value or {}
        text = params["text"]
        delay = params.get("delay", 0.03)
        await self.client.send("input.type", {"text": text, "delay": delay})
        await self._sleep(len(text) * delay * 1000 + 100)

    async def _input_keys(self, action: Action):
        await self.client.send("keys.press", {"keys": _key_list(action.value)})
        await self._sleep(100)

    async def _keys_show(self, action: Action):
        value = action.value
        params = {"keys": _key_list(value.get("keys") if isinstance(value, dict) else value)}
        if isinstance(value, dict) and value.get("press"):
            params["press"] = True
        await self.client.send("keys.show", params)
        self.state.keys = True

    async def _keys_hide(self, action: Action):
        await self.client.send("keys.hide")
        self.state.keys = False

    async def _audio_play(self, action: Action):
        play = action.value or {}
        channel = play.get("channel", 1)
        duration = await self.audio.play(
            file=play["file"],
            channel=channel,
            wait=play.get("wait"),
            fade_in=_duration_or_zero(play.get("fadeIn")),
            fade_out=_duration_or_zero(play.get("fadeOut")),
            start_at=_duration_or_zero(play.get("startAt")),
            loop=play.get("loop", False),
        )
        self._log(f"🎵 Audio duration: {round(duration)}ms")

    async def _audio_stop(self, action: Action):
        options = action.value if isinstance(action.value, dict) else {}
        fade_out = options.get("fadeOut")
        await self.audio.stop(
            channel=options.get("channel"),
            fade_out=parse_duration(fade_out) if fade_out is not None else None,
        )

    async def _audio_volume(self, action: Action):
        volume = action.value or {}
        await self.audio.set_volume(
            channel=volume["channel"],
            volume=volume["volume"],
            duration=_duration_or_zero(volume.get("duration")),
        )

    async def _voice_play(self, action: Action):
        play = action.value
        file = play if isinstance(play, str) else play["file"]
        wait = play.get("wait", True) is not False if isinstance(play, dict) else True

        if not (file.startswith("/") or file.startswith("~")):
            file = str(Path(self.scene.base_path) / file)

        self._log(f"🎤 Playing voice: {file}")
        result = await self.client.send("voice.play", {"file": file}) or {}
        self.audio.live_playing = True

        if wait and result.get("duration"):
            await self._sleep(result["duration"] * 1000 + 200)

    async def _voice_stop(self, action: Action):
        await self.client.send("voice.stop")
        self.audio.live_playing = False

    async def _camera_show(self, action: Action):
        params = action.value if isinstance(action.value, dict) else {}
        await self.client.send("camera.show", params)
        self.state.camera = True

    async def _camera_hide(self, action: Action):
        await self.client.send("camera.hide")
        self.state.camera = False

    async def _camera_set(self, action: Action):
        await self.client.send("camera.set", action.value if isinstance(action.value, dict) else {})

    async def _zoom(self, action: Action):
        zoom = action.value or {}
        zoom_in = zoom.get("in") or {}
        zoom_out = zoom.get("out") or {}

        hold = zoom.get("hold")
        if hold is None or hold == "auto":
            hold = "auto"
        else:
            hold = parse_duration(hold)

        target = zoom.get("target")
        if isinstance(target, dict) and "x" in target:
            x, y = self.resolver.resolve_coordinates(target["x"], target["y"])
            target = {"x": x, "y": y}
        else:
            target = "cursor"

        self._log(f"🔍 Zoom {zoom.get('level')}x ({zoom.get('type', 'crop')})")
        await self.client.send("zoom.start", {
            "type": zoom.get("type", "crop"),
            "level": zoom.get("level"),
            "target": target,
            "in": {
                "duration": parse_duration(zoom_in["duration"]) if zoom_in.get("duration") else 300,
                "easing": zoom_in.get("easing", "ease-out"),
            },
            "out": {
                "duration": parse_duration(zoom_out["duration"]) if zoom_out.get("duration") else 400,
                "easing": zoom_out.get("easing", "ease-in"),
            },
            "hold": hold,
        })

    async def _zoom_reset(self, action: Action):
        reset = action.value if isinstance(action.value, dict) else {}
        await self.client.send("zoom.reset", {
            "duration": parse_duration(reset["duration"]) if reset.get("duration") else 300,
            "easing": reset.get("easing", "ease-out"),
        })

    # ─── Teardown ───────────────────────────────────────────────────────

    async def teardown(self):
        """
        Take down everything the run set up, in reverse order of setup.

        Each layer is guarded on its own. Safe to call repeatedly: a second
        call finds every flag cleared and sends nothing.
        """
        self._log("🧹 Teardown: cleaning up...")

        # Recording first, it is the most expensive thing to leave running
        if self.state.recording:
            try:
                if self.recorder.is_recording():
                    await self.recorder.stop()
            except Exception as e:
                self._log(f"⚠ Failed to stop recorder: {e}")
                self.recorder.force_stop()
            self.state.recording = False

        if self.state.record_indicator:
            await self._send_quietly("record.indicator", {"show": False})
            self.state.record_indicator = False

        if self.audio.active_tracks or self.audio.live_playing:
            try:
                await self.audio.stop(fade_out=0)
            except Exception as e:
                self._log(f"⚠ Failed to stop audio: {e}")
        self.audio.reset()

        if self.state.typer:
            await self._send_quietly("typer.hide")
            self.state.typer = False

        if self.state.keys:
            await self._send_quietly("keys.hide")
            self.state.keys = False

        if self.state.labels:
            await self._send_quietly("label.hide")
            self.state.labels.clear()

        if self.state.cursor:
            await self._send_quietly("cursor.hide")
            self.state.cursor = False

        if self.state.camera:
            await self._send_quietly("camera.hide")
            self.state.camera = False

        if self.state.viewport:
            await self._send_quietly("viewport.hide")
            self.state.viewport = False

        if self.state.backdrop:
            await self._send_quietly("stage.backdrop", {"show": False})
            self.state.backdrop = False

        self._log("🧹 Teardown complete")

    def print_validation_summary(self):
        summary = self.validator.summary()
        if summary.total == 0:
            return

        table = Table(title="Validation Summary")
        table.add_column("Result")
        table.add_column("Count", justify="right")
        table.add_row("[green]✓ Passed[/green]", str(summary.passed))
        if summary.failed:
            table.add_row("[red]✗ Failed[/red]", str(summary.failed))
        if summary.unverified:
            table.add_row("[yellow]? Unverified[/yellow]", str(summary.unverified))
        self.console.print(table)

        for result in summary.failures:
            detail = f" ({result.error})" if result.error else ""
            self.console.print(f"  - {escape(result.action)}:{escape(result.target)}{escape(detail)}")


def final_mix_path(raw_path: str) -> str:
    """Sibling path for the mixed recording: demo.mp4 -> demo-final.mp4."""
    path = Path(raw_path)
    return str(path.with_name(f"{path.stem}-final{path.suffix}"))


def _is_point(target) -> bool:
    return (
        isinstance(target, dict)
        and isinstance(target.get("x"), (int, float))
        and isinstance(target.get("y"), (int, float))
    )


def _is_navigation(target) -> bool:
    return isinstance(target, dict) and target.get("type") == "navigate"


def _key_list(keys) -> list:
    """Accept ["cmd", "v"] or "cmd+v"."""
    if isinstance(keys, str):
        return [k.strip() for k in keys.split("+") if k.strip()]
    return list(keys or [])


def _duration_or_zero(value) -> float:
    return parse_duration(value) if value is not None else 0

"""
Scene model for demo recordings.
A scene is stage/app/audio configuration plus an ordered sequence of actions.
"""
import json
import yaml
from pathlib import Path
from typing import Any, Optional, Union
from dataclasses import dataclass, field
from enum import Enum

from config.settings import (
    DEFAULT_APP_WIDTH, DEFAULT_APP_HEIGHT, DEFAULT_VIEWPORT_PADDING
)


class ActionType(str, Enum):
    """Actions a scene sequence may contain."""
    CURSOR_SHOW = "cursor.show"
    CURSOR_HIDE = "cursor.hide"
    CURSOR_MOVE_TO = "cursor.moveTo"
    CURSOR_CLICK = "cursor.click"
    CLICK = "click"                 # {x, y} or "view.item" / registry target
    WAIT = "wait"                   # "500ms", "1.5s" or milliseconds
    RECORD = "record"               # "start" | "stop"
    NAVIGATE = "navigate"           # {through, items, wait}
    LABEL = "label"
    LABEL_UPDATE = "label.update"
    LABEL_HIDE = "label.hide"
    USE = "use"                     # Component import (not executed)
    TYPER_TYPE = "typer.type"       # Visual typing overlay
    TYPER_HIDE = "typer.hide"
    TYPER_CLEAR = "typer.clear"
    INPUT_TYPE = "input.type"       # Real keyboard input
    INPUT_KEYS = "input.keys"       # Keyboard shortcut
    KEYS_SHOW = "keys.show"         # Keystroke overlay
    KEYS_HIDE = "keys.hide"
    AUDIO_PLAY = "audio.play"
    AUDIO_STOP = "audio.stop"
    AUDIO_VOLUME = "audio.volume"
    VOICE_PLAY = "voice.play"       # Virtual mic playback
    VOICE_STOP = "voice.stop"
    CAMERA_SHOW = "camera.show"
    CAMERA_HIDE = "camera.hide"
    CAMERA_SET = "camera.set"
    ZOOM = "zoom"
    ZOOM_RESET = "zoom.reset"


@dataclass
class Action:
    """
    A single step of a scene sequence.

    `type` is None for actions this version does not know; `tag` keeps the
    raw key so the runner can report what it skipped.
    """
    type: Optional[ActionType]
    tag: str
    value: Any = None
    extra: dict = field(default_factory=dict)   # Sibling keys, e.g. label text

    @property
    def is_known(self) -> bool:
        return self.type is not None

    @classmethod
    def from_raw(cls, raw: Union[str, dict]) -> "Action":
        """Build an action from its YAML form (`{tag: value, ...}` or a bare tag)."""
        if isinstance(raw, str):
            raw = {raw: True}
        if not isinstance(raw, dict) or not raw:
            return cls(type=None, tag=str(raw))

        for key, value in raw.items():
            try:
                action_type = ActionType(key)
            except ValueError:
                continue
            extra = {k: v for k, v in raw.items() if k != key}
            return cls(type=action_type, tag=key, value=value, extra=extra)

        tag = next(iter(raw))
        return cls(type=None, tag=str(tag), value=raw[tag],
                   extra={k: v for k, v in raw.items() if k != tag})


@dataclass
class Presenter:
    """Presenter camera overlay shown during stage setup."""
    enabled: bool = False
    position: Optional[str] = None                  # top-left, bottom-right, ...
    size: Any = None                                # small/medium/large or pixels


@dataclass
class SceneInfo:
    """Scene metadata."""
    name: str
    mode: str = "draft"                             # draft or final
    output: Optional[str] = None                    # Output file name (no extension)
    presenter: Optional[Presenter] = None

    def __post_init__(self):
        if isinstance(self.presenter, dict):
            self.presenter = Presenter(**self.presenter)
        if self.mode not in ("draft", "final"):
            raise ValueError(f"Scene mode must be 'draft' or 'final', got {self.mode!r}")


@dataclass
class AppConfig:
    """Target application window."""
    name: str
    width: int = DEFAULT_APP_WIDTH
    height: int = DEFAULT_APP_HEIGHT
    target_offset: tuple = (0, 0)                   # Correction for registry coordinates

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        window = data.get("window") or {}
        offset = data.get("targetOffset") or data.get("target_offset") or {}
        return cls(
            name=data["name"],
            width=window.get("width") or DEFAULT_APP_WIDTH,
            height=window.get("height") or DEFAULT_APP_HEIGHT,
            target_offset=(offset.get("x", 0), offset.get("y", 0)),
        )


@dataclass
class ViewportConfig:
    """Highlighted recording region around the app window."""
    padding: int = DEFAULT_VIEWPORT_PADDING


@dataclass
class StageConfig:
    """Stage elements prepared before the sequence runs."""
    backdrop: Any = True                            # bool, "gradient" or a color
    viewport: Optional[ViewportConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "StageConfig":
        data = data or {}
        viewport = data.get("viewport")
        if viewport is True:
            viewport = ViewportConfig()
        elif isinstance(viewport, dict):
            viewport = ViewportConfig(padding=viewport.get("padding", DEFAULT_VIEWPORT_PADDING))
        else:
            viewport = None
        return cls(backdrop=data.get("backdrop", True), viewport=viewport)


@dataclass
class View:
    """Named screen region with clickable items."""
    region: Any = None                              # {x, y, width, height} or a name
    items: list[dict] = field(default_factory=list)        # [{home: {x, y}}, ...]
    positions: dict = field(default_factory=dict)          # {name: {x: "50%", y: 20}}


@dataclass
class LabelDef:
    """Reusable caption."""
    text: Optional[str] = None
    position: Any = None                            # "top", "bottom" or {x, y}
    style: dict = field(default_factory=dict)


@dataclass
class AudioChannelConfig:
    """Mixer channel settings."""
    role: str = "custom"                            # narration, music, sfx, ambient
    output: str = "post-only"                       # virtual-mic, monitor, both, post-only
    volume: float = 1.0
    pan: float = 0.0


@dataclass
class AudioTrackConfig:
    """Track scheduled on the recording timeline ahead of time."""
    file: str
    channel: int
    start_time: Any = 0
    fade_in: Any = 0
    fade_out: Any = 0
    loop: bool = False
    volume: Optional[float] = None


@dataclass
class AudioConfig:
    """Scene-level audio configuration."""
    channels: dict = field(default_factory=dict)    # {channel id: AudioChannelConfig}
    tracks: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "AudioConfig":
        channels = {}
        for key, cfg in (data.get("channels") or {}).items():
            channel_id = int(key)
            cfg = cfg or {}
            channels[channel_id] = AudioChannelConfig(
                role=cfg.get("role", "narration" if channel_id == 1 else "custom"),
                output=cfg.get("output", "virtual-mic" if channel_id == 1 else "post-only"),
                volume=cfg.get("volume", 1.0),
                pan=cfg.get("pan", 0.0),
            )
        tracks = [
            AudioTrackConfig(
                file=t["file"],
                channel=int(t.get("channel", 2)),
                start_time=t.get("startTime", 0),
                fade_in=t.get("fadeIn", 0),
                fade_out=t.get("fadeOut", 0),
                loop=t.get("loop", False),
                volume=t.get("volume"),
            )
            for t in (data.get("tracks") or [])
        ]
        return cls(channels=channels, tracks=tracks)


@dataclass
class ParsedScene:
    """Complete scene ready to run."""
    scene: SceneInfo
    sequence: list[Action]
    app: Optional[AppConfig] = None
    stage: StageConfig = field(default_factory=StageConfig)
    views: dict = field(default_factory=dict)       # {name: View}
    labels: dict = field(default_factory=dict)      # {name: LabelDef}
    audio: Optional[AudioConfig] = None
    base_path: Path = field(default_factory=Path.cwd)


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration expression to milliseconds.

    Numbers are milliseconds already; strings accept "ms" and "s" suffixes
    ("500ms", "1s", "2.5s") and default to milliseconds without a unit.
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().lower()
    if text.endswith("ms"):
        return float(text[:-2])
    if text.endswith("s"):
        return float(text[:-1]) * 1000
    return float(text)


def _read_file(path: Path) -> dict:
    with open(path) as f:
        if path.suffix in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    return data or {}


def scene_from_dict(data: dict, base_path: Optional[Path] = None) -> ParsedScene:
    """Build a ParsedScene from already-loaded YAML/JSON data."""
    base_path = Path(base_path) if base_path else Path.cwd()

    if not data.get("scene"):
        raise ValueError('Scene file must have a "scene" section')
    if not data["scene"].get("name"):
        raise ValueError('Scene must have a "name"')
    if not isinstance(data.get("sequence"), list):
        raise ValueError('Scene must have a "sequence" array')

    views: dict = {}
    labels: dict = {}
    app_data = data.get("app")

    # Imported files contribute views, labels and (if unset) the app
    for import_path in data.get("import") or []:
        full_path = (base_path / import_path).resolve()
        if not full_path.exists():
            raise FileNotFoundError(f"Import file not found: {full_path}")
        imported = _read_file(full_path)
        if imported.get("app") and not app_data:
            app_data = imported["app"]
        views.update(imported.get("views") or {})
        labels.update(imported.get("labels") or {})

    views.update(data.get("views") or {})
    labels.update(data.get("labels") or {})

    return ParsedScene(
        scene=SceneInfo(**data["scene"]),
        sequence=[Action.from_raw(a) for a in data["sequence"]],
        app=AppConfig.from_dict(app_data) if app_data else None,
        stage=StageConfig.from_dict(data.get("stage")),
        views={name: View(**(v or {})) for name, v in views.items()},
        labels={name: LabelDef(**(l or {})) for name, l in labels.items()},
        audio=AudioConfig.from_dict(data["audio"]) if data.get("audio") else None,
        base_path=base_path,
    )


def load_scene(path: str) -> ParsedScene:
    """Load a scene from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scene file not found: {path}")

    return scene_from_dict(_read_file(path), base_path=path.resolve().parent)


# Example scene for reference
EXAMPLE_SCENE = """
scene:
  name: notes-quick-tour
  mode: draft
  output: notes-tour

app:
  name: Notes
  window:
    width: 1200
    height: 800

stage:
  backdrop: true
  viewport:
    padding: 10

views:
  sidebar:
    region: {x: 0, y: 0, width: 220, height: 800}
    items:
      - home: {x: 110, y: 80}
      - settings: {x: 110, y: 140}
    positions:
      footer: {x: "50%", y: "95%"}

labels:
  intro:
    text: "Quick tour of Notes"
    position: top

audio:
  channels:
    1: {role: narration, output: virtual-mic}
    2: {role: music, output: post-only, volume: 0.3}

sequence:
  - cursor.show
  - label: intro
  - audio.play: {file: music/bed.mp3, channel: 2, fadeIn: 1s, loop: true}
  - record: start
  - click: sidebar.home
  - wait: 800ms
  - typer.type: {text: "Meeting notes", style: default}
  - navigate:
      through: sidebar
      items: [home, settings]
      wait: 500ms
  - zoom: {level: 1.5, target: cursor, hold: 1s}
  - zoom.reset: {duration: 300ms}
  - audio.stop: {channel: 2, fadeOut: 1s}
  - record: stop
  - label.hide
"""


def get_example_scene() -> str:
    """Return example scene YAML for reference."""
    return EXAMPLE_SCENE

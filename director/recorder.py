"""
Recorder - screen capture of a region into a video file.

Only captures pixels; overlays and cursor come from the Agent.

Supported platforms:
- macOS: screencapture -v
- Linux (X11): FFmpeg x11grab
- Windows: FFmpeg gdigrab
"""
import os
import time
import asyncio
import signal
import shutil
import platform
import subprocess
from pathlib import Path
from typing import Callable, Optional, Tuple

from config.settings import RECORDER_STOP_TIMEOUT, VIDEO_FPS


class Recorder:
    """
    Owns a single capture process.

    Events: "started", "stopped", "error" and "force-stopped"; listeners are
    registered with on().
    """

    def __init__(self, stop_timeout: float = RECORDER_STOP_TIMEOUT):
        self.stop_timeout = stop_timeout
        self.platform = self._detect_platform()
        self.process: Optional[subprocess.Popen] = None
        self.output: Optional[str] = None
        self.region: Optional[dict] = None
        self.started_at: Optional[float] = None
        self.state = "idle"                         # idle, recording, stopping
        self._listeners: dict[str, list[Callable]] = {}

    def _detect_platform(self) -> str:
        """Detect the current platform for screen capture."""
        system = platform.system().lower()

        if system == "darwin":
            return "macos"

        if system == "linux":
            if os.environ.get("DISPLAY"):
                return "x11"
            if os.environ.get("WAYLAND_DISPLAY"):
                return "wayland"
            return "headless"

        if system == "windows":
            return "windows"

        return "unknown"

    def is_available(self) -> Tuple[bool, str]:
        """Check if screen capture is available on this system."""
        if self.platform == "macos":
            if not shutil.which("screencapture"):
                return False, "screencapture not found"
            return True, "Screen capture available"

        if self.platform == "headless":
            return False, "No display available (headless environment)"

        if self.platform == "wayland":
            return False, "Wayland not yet supported for screen capture"

        if self.platform == "unknown":
            return False, f"Unknown platform: {platform.system()}"

        if not shutil.which("ffmpeg"):
            return False, "FFmpeg not installed"

        return True, "Screen capture available"

    def on(self, event: str, callback: Callable):
        self._listeners.setdefault(event, []).append(callback)

    def _emit(self, event: str, *args):
        for callback in self._listeners.get(event, []):
            callback(*args)

    def is_recording(self) -> bool:
        if self.state == "recording" and self.process is not None and self.process.poll() is not None:
            self._emit("error", RuntimeError(
                f"Capture process exited unexpectedly with code {self.process.returncode}"))
            self._reset()
        return self.state == "recording"

    def build_command(self, output: str, region: Optional[dict] = None,
                      audio: bool = False) -> list[str]:
        """Capture command for the current platform."""
        if self.platform == "macos":
            cmd = ["screencapture", "-v"]
            if not audio:
                cmd.append("-x")
            if region:
                cmd.extend(["-R", f"{region['x']},{region['y']},{region['width']},{region['height']}"])
            cmd.append(output)
            return cmd

        if self.platform == "x11":
            display = os.environ.get("DISPLAY", ":0.0")
            cmd = ["ffmpeg", "-y", "-f", "x11grab", "-framerate", str(VIDEO_FPS)]
            if region:
                cmd.extend([
                    "-video_size", f"{region['width']}x{region['height']}",
                    "-i", f"{display}+{region['x']},{region['y']}",
                ])
            else:
                cmd.extend(["-i", display])
        elif self.platform == "windows":
            cmd = ["ffmpeg", "-y", "-f", "gdigrab", "-framerate", str(VIDEO_FPS)]
            if region:
                cmd.extend([
                    "-offset_x", str(region["x"]),
                    "-offset_y", str(region["y"]),
                    "-video_size", f"{region['width']}x{region['height']}",
                ])
            cmd.extend(["-i", "desktop"])
        else:
            raise RuntimeError(f"Unsupported platform for screen capture: {self.platform}")

        cmd.extend([
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-crf", "18",
            "-pix_fmt", "yuv420p",
            output
        ])
        return cmd

    async def start(self, output: str, region: Optional[dict] = None, audio: bool = False):
        """Start capturing. Raises RuntimeError if already recording."""
        if self.state != "idle":
            raise RuntimeError(f"Cannot start recording: state is '{self.state}'")

        Path(output).parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(output, region, audio)

        self.process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL
        )
        self.output = output
        self.region = region
        self.started_at = time.time()
        self.state = "recording"

        self._emit("started", {"output": output, "region": region})

    async def stop(self) -> str:
        """Stop capturing and return the recorded file path."""
        if self.state != "recording" or self.process is None:
            raise RuntimeError(f"Cannot stop recording: state is '{self.state}'")

        self.state = "stopping"
        proc, output = self.process, self.output

        self._interrupt(proc)

        deadline = time.monotonic() + self.stop_timeout
        while proc.poll() is None and time.monotonic() < deadline:
            await asyncio.sleep(0.05)

        if proc.poll() is None:
            proc.kill()
            await asyncio.sleep(0.2)

        self._reset()

        if not Path(output).exists():
            error = RuntimeError("Video file not created")
            self._emit("error", error)
            raise error

        self._emit("stopped", {"output": output})
        return output

    def force_stop(self):
        """Kill the capture process (emergency cleanup)."""
        if self.process is not None and self.process.poll() is None:
            self.process.kill()
        self._reset()
        self._emit("force-stopped")

    def _interrupt(self, proc: subprocess.Popen):
        """Ask the capture process to finalize its file."""
        try:
            if self.platform == "macos":
                proc.send_signal(signal.SIGINT)
            else:
                # FFmpeg finishes the container cleanly on 'q'
                proc.stdin.write(b"q")
                proc.stdin.flush()
        except (OSError, ValueError):
            pass

    def _reset(self):
        self.process = None
        self.output = None
        self.region = None
        self.started_at = None
        self.state = "idle"

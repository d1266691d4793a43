"""
Central configuration for Demo Director.
"""
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Output directories (shared with the Agent)
VIF_HOME = Path(os.getenv("VIF_HOME", str(Path.home() / ".vif"))).expanduser()
RECORDINGS_DIR = VIF_HOME / "recordings"

# Agent connection
AGENT_HOST = os.getenv("VIF_AGENT_HOST", "localhost")
AGENT_PORT = int(os.getenv("VIF_AGENT_PORT", "7850"))
COMMAND_TIMEOUT = float(os.getenv("VIF_COMMAND_TIMEOUT", "30"))  # seconds

# Target application telemetry (VifTargets SDK)
TARGETS_HOST = os.getenv("VIF_TARGETS_HOST", "localhost")
TARGETS_PORT = int(os.getenv("VIF_TARGETS_PORT", "7851"))
TELEMETRY_TIMEOUT = 2.0  # seconds per HTTP request

# Validation polling
VALIDATION_GRACE_MS = 150
VALIDATION_ATTEMPTS = 3
VALIDATION_POLL_MS = 100

# Stage settings
SCREEN_WIDTH = int(os.getenv("VIF_SCREEN_WIDTH", "1710"))
SCREEN_HEIGHT = int(os.getenv("VIF_SCREEN_HEIGHT", "1112"))
DEFAULT_APP_WIDTH = 1200
DEFAULT_APP_HEIGHT = 800
DEFAULT_VIEWPORT_PADDING = 10
WINDOW_SETTLE_MS = 500

# Recording settings
RECORDING_FORMAT = "mp4"
RECORDER_STOP_TIMEOUT = 2.0  # seconds before the capture process is killed
VIDEO_FPS = 30
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"


def agent_url(port: int = AGENT_PORT) -> str:
    """WebSocket URL of the Agent."""
    return f"ws://{AGENT_HOST}:{port}"


def targets_url(port: int = TARGETS_PORT) -> str:
    """Base URL of the target application's telemetry endpoint."""
    return f"http://{TARGETS_HOST}:{port}"


def get_output_path(mode: str = "draft", name: str = None, timestamp: str = None) -> Path:
    """
    Get the capture path for a recording.

    Draft recordings overwrite a single file in VIF_HOME; final recordings
    go to the recordings directory with a name or timestamp.
    """
    if mode == "draft":
        filename = f"{name}.{RECORDING_FORMAT}" if name else f"draft.{RECORDING_FORMAT}"
        return VIF_HOME / filename

    if name:
        filename = f"{name}.{RECORDING_FORMAT}"
    else:
        timestamp = timestamp or datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        filename = f"recording-{timestamp}.{RECORDING_FORMAT}"
    return RECORDINGS_DIR / filename

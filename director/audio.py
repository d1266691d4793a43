"""
Multi-channel audio for scene recordings.

Channel 1 (narration) plays live through the Agent's virtual mic, so it is
captured with the screen. Every other channel is only written to a timeline
and mixed onto the capture with FFmpeg once recording stops.
"""
import os
import time
import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional
from dataclasses import dataclass, replace

from config.settings import AUDIO_CODEC, AUDIO_BITRATE
from .scenes import AudioConfig, AudioChannelConfig, parse_duration

LIVE_OUTPUTS = ("virtual-mic", "both")
CROSSFADE_MIN_MS = 500


@dataclass
class AudioEvent:
    """One entry of the recording's audio timeline. Times are ms."""
    type: str                                       # play, stop or volume
    channel: int
    time: float                                     # Offset from recording start
    file: Optional[str] = None
    fade_in: float = 0
    fade_out: float = 0
    loop: bool = False
    volume: Optional[float] = None
    duration: float = 0                             # Volume automation length
    audio_duration: float = 0                       # Clip length


@dataclass
class ActiveTrack:
    """Track currently playing on a channel."""
    file: str
    start_time: float
    duration: float
    fade_in: float
    fade_out: float
    loop: bool
    volume: float


def _quiet(msg: str, data: Optional[dict] = None):
    pass


class AudioManager:
    """Owns the audio channels and the timeline of one recording."""

    def __init__(self, send: Optional[Callable] = None, sleep: Callable = asyncio.sleep,
                 clock: Callable = time.monotonic, log: Callable = _quiet):
        self.send = send
        self.sleep = sleep
        self.clock = clock
        self.log = log

        self.base_path = Path.cwd()
        self.channels: dict[int, AudioChannelConfig] = {
            1: AudioChannelConfig(role="narration", output="virtual-mic"),
        }
        self.active_tracks: dict[int, ActiveTrack] = {}
        self.timeline: list[AudioEvent] = []
        self.scheduled: list[AudioEvent] = []
        self.recording_start: Optional[float] = None
        self.live_playing = False                   # Agent still playing; kept across reset()

    def configure(self, config: Optional[AudioConfig], base_path=None):
        """Apply a scene's channel settings and pre-scheduled tracks."""
        if base_path is not None:
            self.base_path = Path(base_path)

        if not config:
            return

        for channel_id, channel in config.channels.items():
            self.channels[channel_id] = replace(channel)

        for track in config.tracks:
            file = self.resolve_path(track.file)
            self.scheduled.append(AudioEvent(
                type="play",
                channel=track.channel,
                time=parse_duration(track.start_time or 0),
                file=file,
                fade_in=parse_duration(track.fade_in or 0),
                fade_out=parse_duration(track.fade_out or 0),
                loop=track.loop,
                volume=track.volume,
                audio_duration=self.get_duration(file),
            ))
        self.timeline.extend(replace(e) for e in self.scheduled)

    def start_recording(self):
        """Mark the timeline origin; scheduled tracks are placed relative to it."""
        self.recording_start = self.clock()

    def current_time(self) -> float:
        """Milliseconds since recording start (0 when not recording)."""
        if self.recording_start is None:
            return 0
        return (self.clock() - self.recording_start) * 1000

    def channel(self, channel_id: int) -> AudioChannelConfig:
        if channel_id in self.channels:
            return self.channels[channel_id]
        return AudioChannelConfig(
            role="narration" if channel_id == 1 else "custom",
            output="virtual-mic" if channel_id == 1 else "post-only",
        )

    async def play(self, file: str, channel: int = 1, wait: Optional[bool] = None,
                   fade_in: float = 0, fade_out: float = 0, start_at: float = 0,
                   loop: bool = False) -> float:
        """
        Play a clip on a channel.

        Returns the clip duration in ms. Blocks until the clip ends when
        `wait` is true; by default only channel 1 waits.
        """
        if wait is None:
            wait = channel == 1

        config = self.channel(channel)
        resolved = self.resolve_path(file)
        duration = self.get_duration(resolved)
        now = self.current_time()

        existing = self.active_tracks.get(channel)
        if existing:
            # Crossfade out whatever is already on the channel
            self.timeline.append(AudioEvent(
                type="stop",
                channel=channel,
                time=now,
                fade_out=max(fade_in, existing.fade_out, CROSSFADE_MIN_MS),
            ))

        self.timeline.append(AudioEvent(
            type="play",
            channel=channel,
            time=now,
            file=resolved,
            fade_in=fade_in,
            fade_out=fade_out,
            loop=loop,
            audio_duration=duration,
        ))
        self.active_tracks[channel] = ActiveTrack(
            file=resolved,
            start_time=now,
            duration=duration,
            fade_in=fade_in,
            fade_out=fade_out,
            loop=loop,
            volume=config.volume,
        )
        self.log(f"🎵 Channel {channel} ({config.output}): {resolved}")

        if config.output in LIVE_OUTPUTS:
            if self.send:
                params = {"file": resolved}
                if start_at:
                    params["startAt"] = start_at / 1000
                result = await self.send("voice.play", params) or {}
                self.live_playing = True
                if wait:
                    reported = result.get("duration")
                    wait_ms = reported * 1000 if reported else duration
                    await self.sleep((wait_ms + 200) / 1000)
        elif wait and config.output == "post-only":
            await self.sleep(duration / 1000)

        return duration

    async def stop(self, channel: Optional[int] = None, fade_out: Optional[float] = None):
        """Stop one channel, or every active channel when none is given."""
        fade_out = 500 if fade_out is None else fade_out
        now = self.current_time()

        if channel is not None:
            self.timeline.append(AudioEvent(type="stop", channel=channel, time=now, fade_out=fade_out))
            self.active_tracks.pop(channel, None)
            if self.channel(channel).output in LIVE_OUTPUTS and self.send:
                await self.send("voice.stop", {})
                self.live_playing = False
            return

        for active in list(self.active_tracks):
            self.timeline.append(AudioEvent(type="stop", channel=active, time=now, fade_out=fade_out))
        self.active_tracks.clear()

        if self.send:
            await self.send("voice.stop", {})
            self.live_playing = False

    async def set_volume(self, channel: int, volume: float, duration: float = 0):
        """Change a channel's volume, optionally ramped over `duration` ms."""
        self.timeline.append(AudioEvent(
            type="volume",
            channel=channel,
            time=self.current_time(),
            volume=volume,
            duration=duration,
        ))
        if channel in self.channels:
            self.channels[channel].volume = volume
        else:
            self.channels[channel] = replace(self.channel(channel), volume=volume)

    def get_timeline(self) -> list[AudioEvent]:
        return list(self.timeline)

    def has_post_audio(self) -> bool:
        """True when something on the timeline must be mixed after capture."""
        return any(self.channel(e.channel).output != "virtual-mic" for e in self.timeline)

    def build_mix_command(self, video_path: str, output_path: str,
                          video_duration: float = 0) -> Optional[list[str]]:
        """
        Build the FFmpeg command mixing the timeline onto a capture.

        Returns None when no event needs mixing. `video_duration` (seconds)
        trims the mix to the capture length.
        """
        inputs = [video_path]
        filters = []
        mix_inputs = []

        by_channel: dict[int, list[AudioEvent]] = {}
        for event in self.timeline:
            by_channel.setdefault(event.channel, []).append(event)

        for channel_id, events in by_channel.items():
            config = self.channel(channel_id)
            # Live-only channels are already in the capture
            if config.output == "virtual-mic":
                continue

            plays = [e for e in events if e.type == "play" and e.file]
            for i, event in enumerate(plays):
                inputs.append(event.file)
                label = f"ch{channel_id}_{i}"
                chain = []

                delay = round(event.time)
                if delay > 0:
                    chain.append(f"adelay={delay}|{delay}")

                if event.fade_in > 0:
                    chain.append(f"afade=t=in:st=0:d={event.fade_in / 1000}")

                if event.fade_out > 0 and event.audio_duration:
                    stop = next((e for e in events if e.type == "stop" and e.time > event.time), None)
                    end = stop.time if stop else event.time + event.audio_duration
                    fade_start = (end - event.time - event.fade_out) / 1000
                    if fade_start > 0:
                        chain.append(f"afade=t=out:st={fade_start}:d={event.fade_out / 1000}")

                volume = event.volume if event.volume is not None else config.volume
                if volume != 1.0:
                    chain.append(f"volume={volume}")

                if event.loop:
                    chain.append("aloop=loop=-1:size=2e+09")

                filters.append(f"[{len(inputs) - 1}:a]{','.join(chain) or 'anull'}[{label}]")
                mix_inputs.append(f"[{label}]")

        if not mix_inputs:
            return None

        amix = f"{''.join(mix_inputs)}amix=inputs={len(mix_inputs)}:duration=longest:dropout_transition=2"
        if video_duration > 0:
            amix += f",atrim=0:{video_duration},asetpts=PTS-STARTPTS"
        filters.append(amix + "[aout]")

        cmd = ["ffmpeg", "-y"]
        for path in inputs:
            cmd.extend(["-i", str(path)])
        cmd.extend([
            "-filter_complex", ";".join(filters),
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", AUDIO_CODEC,
            "-b:a", AUDIO_BITRATE,
            str(output_path),
        ])
        return cmd

    def render_final_mix(self, raw_path: str, output_path: str) -> bool:
        """Write the capture with its mixed audio to output_path."""
        video_duration = self.get_duration(raw_path) / 1000
        cmd = self.build_mix_command(raw_path, output_path, video_duration)

        if cmd is None:
            try:
                shutil.copyfile(raw_path, output_path)
                return True
            except OSError:
                return False

        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
            return True
        except (subprocess.CalledProcessError, OSError) as e:
            print(f"Audio mix failed: {getattr(e, 'stderr', None) or e}")
            return False

    def reset(self):
        """Forget played audio before the next recording; scheduled tracks stay."""
        self.timeline = [replace(e) for e in self.scheduled]
        self.active_tracks.clear()
        self.recording_start = None

    def resolve_path(self, file: str) -> str:
        if file.startswith("~"):
            return os.path.expanduser(file)
        if os.path.isabs(file):
            return file
        return str((self.base_path / file).resolve())

    def get_duration(self, file_path: str) -> float:
        """Media duration in ms (0 if unknown)."""
        if not file_path or not Path(file_path).exists():
            return 0

        cmd = [
            "ffprobe", "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(file_path)
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            return float(result.stdout.strip()) * 1000
        except (subprocess.CalledProcessError, OSError, ValueError):
            return 0

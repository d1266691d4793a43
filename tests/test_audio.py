import pytest

from director.audio import AudioManager
from director.scenes import AudioConfig, AudioChannelConfig, AudioTrackConfig


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def agent():
    calls = []

    async def send(action, params=None):
        calls.append((action, params))
        return {"ok": True, "duration": 2} if action == "voice.play" else {"ok": True}

    send.calls = calls
    return send


@pytest.fixture
def manager(agent, sleep, clock, tmp_path):
    audio = AudioManager(send=agent, sleep=sleep, clock=clock)
    audio.configure(AudioConfig(channels={
        2: AudioChannelConfig(role="music", output="post-only", volume=0.3),
        3: AudioChannelConfig(role="sfx", output="both"),
    }), tmp_path)
    audio.get_duration = lambda path: 4000
    return audio


@pytest.mark.asyncio
async def test_narration_plays_live_and_waits(manager, agent, sleep):
    duration = await manager.play("intro.wav")

    assert duration == 4000
    assert agent.calls[0][0] == "voice.play"
    assert agent.calls[0][1]["file"].endswith("intro.wav")
    # reported duration (2s) wins over the probed one
    assert sleep.calls == pytest.approx([2.2])
    assert not manager.has_post_audio()


@pytest.mark.asyncio
async def test_post_only_channel_is_timeline_only(manager, agent, sleep, clock):
    manager.start_recording()
    clock.now += 1.5

    await manager.play("bed.mp3", channel=2, fade_in=1000, loop=True)

    assert agent.calls == []
    assert sleep.calls == []
    event = manager.get_timeline()[0]
    assert (event.type, event.channel, event.time, event.loop) == ("play", 2, 1500, True)
    assert manager.has_post_audio()


@pytest.mark.asyncio
async def test_both_output_plays_live_and_needs_mix(manager, agent):
    await manager.play("ding.wav", channel=3, start_at=250)

    assert agent.calls == [("voice.play", {"file": manager.resolve_path("ding.wav"), "startAt": 0.25})]
    assert manager.has_post_audio()


@pytest.mark.asyncio
async def test_second_play_crossfades(manager):
    await manager.play("a.mp3", channel=2, fade_out=800)
    await manager.play("b.mp3", channel=2, fade_in=200)

    types = [(e.type, e.fade_out) for e in manager.get_timeline()]
    assert types == [("play", 800), ("stop", 800), ("play", 0)]
    assert manager.active_tracks[2].file.endswith("b.mp3")


@pytest.mark.asyncio
async def test_crossfade_has_minimum_length(manager):
    await manager.play("a.mp3", channel=2)
    await manager.play("b.mp3", channel=2)

    stop = manager.get_timeline()[1]
    assert stop.fade_out == 500


@pytest.mark.asyncio
async def test_stop_single_post_channel_sends_nothing(manager, agent):
    await manager.play("a.mp3", channel=2)
    await manager.stop(channel=2, fade_out=1000)

    assert agent.calls == []
    assert manager.get_timeline()[-1].fade_out == 1000
    assert manager.active_tracks == {}


@pytest.mark.asyncio
async def test_stop_all(manager, agent):
    await manager.play("a.mp3", channel=2)
    await manager.play("b.mp3", channel=1, wait=False)

    await manager.stop()

    stops = [e for e in manager.get_timeline() if e.type == "stop"]
    assert sorted(e.channel for e in stops) == [1, 2]
    assert all(e.fade_out == 500 for e in stops)
    assert agent.calls[-1] == ("voice.stop", {})


@pytest.mark.asyncio
async def test_set_volume(manager):
    await manager.set_volume(4, 0.5, duration=300)

    event = manager.get_timeline()[0]
    assert (event.type, event.volume, event.duration) == ("volume", 0.5, 300)
    assert manager.channel(4).volume == 0.5
    assert manager.channel(4).output == "post-only"


@pytest.mark.asyncio
async def test_mix_command(manager, clock):
    manager.start_recording()
    await manager.play("narration.wav", wait=False)
    clock.now += 1
    await manager.play("bed.mp3", channel=2, fade_in=500, loop=True)

    cmd = manager.build_mix_command("raw.mp4", "raw-final.mp4", video_duration=12.0)

    inputs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]
    assert inputs[0] == "raw.mp4"
    assert len(inputs) == 2 and inputs[1].endswith("bed.mp3")
    graph = cmd[cmd.index("-filter_complex") + 1]
    assert "adelay=1000|1000" in graph
    assert "afade=t=in:st=0:d=0.5" in graph
    assert "volume=0.3" in graph
    assert "aloop=loop=-1" in graph
    assert "amix=inputs=1" in graph
    assert "atrim=0:12.0" in graph
    assert cmd[-1] == "raw-final.mp4"


def test_mix_command_without_post_audio(manager):
    assert manager.build_mix_command("raw.mp4", "out.mp4") is None


def test_render_without_mix_copies(manager, tmp_path):
    raw = tmp_path / "raw.mp4"
    raw.write_bytes(b"video")

    assert manager.render_final_mix(str(raw), str(tmp_path / "raw-final.mp4"))
    assert (tmp_path / "raw-final.mp4").read_bytes() == b"video"


@pytest.mark.asyncio
async def test_reset_keeps_scheduled_tracks(agent, sleep, clock, tmp_path):
    audio = AudioManager(send=agent, sleep=sleep, clock=clock)
    audio.configure(AudioConfig(tracks=[
        AudioTrackConfig(file="music.mp3", channel=2, start_time="2s", fade_in="500ms"),
    ]), tmp_path)

    await audio.play("x.mp3", channel=2)
    audio.reset()

    timeline = audio.get_timeline()
    assert len(timeline) == 1
    assert (timeline[0].time, timeline[0].fade_in) == (2000, 500)
    assert audio.active_tracks == {}
    assert audio.current_time() == 0


def test_resolve_path(manager, tmp_path):
    assert manager.resolve_path("/abs/a.mp3") == "/abs/a.mp3"
    assert manager.resolve_path("music/a.mp3") == str((tmp_path / "music" / "a.mp3").resolve())


def test_duration_of_missing_file_is_zero():
    assert AudioManager().get_duration("/nonexistent/file.mp3") == 0


@pytest.mark.asyncio
async def test_live_playback_survives_reset(manager, agent):
    await manager.play("intro.wav", wait=False)
    await manager.play("bed.mp3", channel=2, wait=False)
    assert manager.live_playing

    manager.reset()

    assert manager.active_tracks == {}
    assert manager.live_playing

    await manager.stop()

    assert agent.calls[-1] == ("voice.stop", {})
    assert not manager.live_playing


@pytest.mark.asyncio
async def test_post_only_play_is_not_live(manager):
    await manager.play("bed.mp3", channel=2, wait=False)

    assert not manager.live_playing

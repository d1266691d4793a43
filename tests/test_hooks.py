import pytest

from director.hooks import Hooks


@pytest.mark.asyncio
async def test_sync_and_async_callbacks_run_in_order():
    hooks = Hooks()
    calls = []

    async def later(path):
        calls.append(("async", path))

    hooks.hook("recording:stopped", lambda path: calls.append(("sync", path)))
    hooks.hook("recording:stopped", later)

    await hooks.call("recording:stopped", "/tmp/demo.mp4")

    assert calls == [("sync", "/tmp/demo.mp4"), ("async", "/tmp/demo.mp4")]


@pytest.mark.asyncio
async def test_unregister():
    hooks = Hooks()
    calls = []
    unregister = hooks.hook("scene:complete", calls.append)

    unregister()
    unregister()
    await hooks.call("scene:complete", "scene")

    assert calls == []


@pytest.mark.asyncio
async def test_unknown_hook_is_noop():
    await Hooks().call("scene:nothing", 1, 2)


@pytest.mark.asyncio
async def test_callback_errors_propagate():
    hooks = Hooks()

    def broken(*args):
        raise RuntimeError("plugin failed")

    hooks.hook("scene:before-run", broken)

    with pytest.raises(RuntimeError):
        await hooks.call("scene:before-run", None)

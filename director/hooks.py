"""
Lifecycle hooks for scene runs.

Runner hooks:
- scene:before-run (scene)
- scene:action-before / scene:action-after (action, index)
- scene:action-error (action, index, error)
- scene:complete (scene) / scene:error (scene, error)
- recording:before-start (options) / recording:started (output)
- recording:before-stop () / recording:stopped (output)

Example:
    hooks = Hooks()
    hooks.hook("recording:stopped", lambda path: print(f"Saved {path}"))
"""
import inspect
from typing import Callable


class Hooks:
    """Named callback registry; callbacks may be sync or async."""

    def __init__(self):
        self._hooks: dict[str, list[Callable]] = {}

    def hook(self, name: str, callback: Callable) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._hooks.setdefault(name, []).append(callback)

        def unregister():
            callbacks = self._hooks.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unregister

    async def call(self, name: str, *args):
        """Invoke callbacks in registration order."""
        for callback in list(self._hooks.get(name, [])):
            result = callback(*args)
            if inspect.isawaitable(result):
                await result

"""
Demo Director package.

Avoids importing the networking stack at package load time so that the scene
model and coordinate math can be used without websockets/aiohttp being
imported.
"""

__all__ = ["run_scene"]


async def run_scene(path: str, **options):
    """Load a scene file and run it; options are passed to SceneRunner."""
    from .scenes import load_scene
    from .scene_runner import SceneRunner

    runner = SceneRunner(load_scene(path), **options)
    await runner.run()
    return runner

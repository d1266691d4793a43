"""
Coordinate resolution for scene actions.

Scene coordinates are either absolute screen points or relative to the
target app window. Named targets ("sidebar.home") come from the scene's
views; the target app may also publish its own registry of points.
"""
import math
from typing import Optional
from dataclasses import dataclass

from .errors import TargetNotFound


@dataclass
class Bounds:
    """Screen rectangle of the app window after centering."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def centered(cls, screen_width: int, screen_height: int,
                 width: int, height: int) -> "Bounds":
        return cls(
            x=(screen_width - width) // 2,
            y=(screen_height - height) // 2,
            width=width,
            height=height,
        )

    def padded(self, padding: int) -> dict:
        """Rectangle grown by padding on every side."""
        return {
            "x": self.x - padding,
            "y": self.y - padding,
            "width": self.width + padding * 2,
            "height": self.height + padding * 2,
        }


class TargetResolver:
    """Turns scene positions into absolute screen coordinates."""

    def __init__(self, views: Optional[dict] = None, bounds: Optional[Bounds] = None,
                 offset: tuple = (0, 0)):
        self.views = views or {}
        self.bounds = bounds
        self.offset = offset

    def resolve_coordinates(self, x: float, y: float) -> tuple:
        """
        Resolve a point against the app window.

        A point inside the window's size is taken as window-relative, anything
        else as absolute. An absolute point smaller than the window therefore
        resolves as relative; scenes pick their convention per window size.
        """
        if self.bounds is None:
            return x, y

        if x < self.bounds.width and y < self.bounds.height:
            return (
                self.bounds.x + x + self.offset[0],
                self.bounds.y + y + self.offset[1],
            )

        return x, y

    def resolve_view_target(self, target: str) -> tuple:
        """Resolve "view.item" through the scene's named views."""
        view_name, _, item_name = target.partition(".")

        view = self.views.get(view_name)
        if view is None:
            raise TargetNotFound(f"View not found: {view_name}")

        if item_name:
            base_x = self._view_base_x(view)

            for item in view.items or []:
                if item_name in item:
                    pos = item[item_name] or {}
                    return self.resolve_coordinates(base_x + pos.get("x", 0), pos.get("y", 0))

            positions = view.positions or {}
            if item_name in positions:
                pos = positions[item_name]
                width = self.bounds.width if self.bounds else 0
                height = self.bounds.height if self.bounds else 0
                return self.resolve_coordinates(
                    base_x + self._position_value(pos.get("x", 0), width),
                    self._position_value(pos.get("y", 0), height),
                )

        raise TargetNotFound(f"Target not found: {target}")

    def resolve_label_position(self, position) -> dict:
        """Label placement parameters for label.show."""
        if not position:
            return {"position": "top"}
        if isinstance(position, str):
            return {"position": position}
        return {"x": position.get("x"), "y": position.get("y")}

    def _view_base_x(self, view) -> float:
        if isinstance(view.region, dict):
            return view.region.get("x") or 0
        return 0

    def _position_value(self, value, dimension: int) -> float:
        """Numeric value, or a percentage of the window dimension."""
        if isinstance(value, (int, float)):
            return value

        value = str(value).strip()
        if value.endswith("%"):
            return math.floor(float(value[:-1]) / 100 * dimension)
        return float(value)

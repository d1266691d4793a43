import pytest

from director.errors import TargetNotFound
from director.scenes import View
from director.targets import Bounds, TargetResolver

BOUNDS = Bounds(x=100, y=50, width=800, height=600)


def test_no_bounds_is_identity():
    assert TargetResolver().resolve_coordinates(10, 10) == (10, 10)


def test_point_inside_window_is_relative():
    assert TargetResolver(bounds=BOUNDS).resolve_coordinates(10, 10) == (110, 60)


def test_point_outside_window_is_absolute():
    resolver = TargetResolver(bounds=BOUNDS)
    assert resolver.resolve_coordinates(1000, 10) == (1000, 10)
    assert resolver.resolve_coordinates(10, 600) == (10, 600)


def test_small_absolute_point_still_treated_as_relative():
    assert TargetResolver(bounds=BOUNDS).resolve_coordinates(799, 599) == (899, 649)


def test_offset_applies_to_relative_points_only():
    resolver = TargetResolver(bounds=BOUNDS, offset=(3, -2))
    assert resolver.resolve_coordinates(10, 10) == (113, 58)
    assert resolver.resolve_coordinates(1000, 10) == (1000, 10)


def test_bounds_helpers():
    assert Bounds.centered(1710, 1112, 1200, 800) == Bounds(255, 156, 1200, 800)
    assert BOUNDS.padded(10) == {"x": 90, "y": 40, "width": 820, "height": 620}


class TestViewTargets:
    @pytest.fixture
    def resolver(self):
        views = {
            "sidebar": View(
                region={"x": 20, "y": 0, "width": 200, "height": 600},
                items=[{"home": {"x": 30, "y": 40}}, {"trash": {"x": 30, "y": 90}}],
                positions={"footer": {"x": "50%", "y": "95%"}, "logo": {"x": 5, "y": 5}},
            ),
        }
        return TargetResolver(views, bounds=BOUNDS)

    def test_item_adds_region_x(self, resolver):
        assert resolver.resolve_view_target("sidebar.trash") == (150, 140)

    def test_percentage_position(self, resolver):
        # 50% of 800 = 400, 95% of 600 = 570
        assert resolver.resolve_view_target("sidebar.footer") == (520, 620)

    def test_numeric_position(self, resolver):
        assert resolver.resolve_view_target("sidebar.logo") == (125, 55)

    def test_unknown_view(self, resolver):
        with pytest.raises(TargetNotFound, match="View not found: toolbar"):
            resolver.resolve_view_target("toolbar.save")

    def test_unknown_item(self, resolver):
        with pytest.raises(TargetNotFound, match="Target not found: sidebar.nope"):
            resolver.resolve_view_target("sidebar.nope")

    def test_view_without_item(self, resolver):
        with pytest.raises(TargetNotFound):
            resolver.resolve_view_target("sidebar")


@pytest.mark.parametrize("position,expected", [
    (None, {"position": "top"}),
    ("bottom", {"position": "bottom"}),
    ({"x": 10, "y": 20}, {"x": 10, "y": 20}),
])
def test_label_position(position, expected):
    assert TargetResolver().resolve_label_position(position) == expected

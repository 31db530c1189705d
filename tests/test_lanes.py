"""Tests for slotcam.lanes module."""

import pytest

from slotcam.lanes import (
    MIN_REGION_SIZE,
    Lane,
    Region,
    create_default_lanes,
)


# ---------------------------------------------------------------------------
# Region
# ---------------------------------------------------------------------------


class TestRegion:
    def test_clamped_enforces_minimum_size(self):
        """Zero or negative extents clamp up to the minimum."""
        region = Region(0.5, 0.5, 0.0, -0.2).clamped()
        assert region.width == MIN_REGION_SIZE
        assert region.height == MIN_REGION_SIZE

    def test_clamped_keeps_region_inside_frame(self):
        """Origin is pulled back so the rectangle ends at the frame edge."""
        region = Region(0.9, 0.8, 0.5, 0.4).clamped()
        assert region.x == pytest.approx(0.5)
        assert region.y == pytest.approx(0.6)
        assert region.x + region.width <= 1.0
        assert region.y + region.height <= 1.0

    def test_moved_stops_at_edges(self):
        region = Region(0.2, 0.2, 0.3, 0.3).moved(2.0, -2.0)
        assert region.x == pytest.approx(0.7)
        assert region.y == pytest.approx(0.0)
        assert region.width == pytest.approx(0.3)

    def test_resize_se_cannot_exceed_frame(self):
        region = Region(0.25, 0.25, 0.5, 0.5).resized("se", 1.0, 1.0)
        assert region.x == pytest.approx(0.25)
        assert region.width == pytest.approx(0.75)
        assert region.height == pytest.approx(0.75)

    def test_resize_nw_cannot_invert(self):
        """Dragging the top-left corner past the bottom-right keeps the minimum size."""
        region = Region(0.25, 0.25, 0.5, 0.5).resized("nw", 1.0, 1.0)
        assert region.width == pytest.approx(MIN_REGION_SIZE)
        assert region.height == pytest.approx(MIN_REGION_SIZE)
        # Opposite corner stays put
        assert region.x + region.width == pytest.approx(0.75)
        assert region.y + region.height == pytest.approx(0.75)

    def test_resize_sw_moves_left_edge_only(self):
        region = Region(0.25, 0.25, 0.5, 0.5).resized("sw", -0.1, 0.1)
        assert region.x == pytest.approx(0.15)
        assert region.width == pytest.approx(0.6)
        assert region.y == pytest.approx(0.25)
        assert region.height == pytest.approx(0.6)

    def test_resize_unknown_handle(self):
        with pytest.raises(ValueError):
            Region(0.1, 0.1, 0.5, 0.5).resized("middle", 0.1, 0.1)

    def test_to_pixel_bounds(self):
        region = Region(0.25, 0.5, 0.5, 0.25)
        assert region.to_pixel_bounds(640, 480) == (160, 240, 320, 120)

    def test_to_pixel_bounds_minimum_one_pixel(self):
        """A region thinner than a pixel still covers one pixel."""
        region = Region(0.999, 0.999, 0.0001, 0.0001)
        x, y, w, h = region.to_pixel_bounds(100, 100)
        assert (w, h) == (1, 1)
        assert x + w <= 100 and y + h <= 100

    def test_dict_round_trip(self):
        region = Region(0.1, 0.2, 0.3, 0.4)
        assert Region.from_dict(region.to_dict()) == region


# ---------------------------------------------------------------------------
# Lane
# ---------------------------------------------------------------------------


class TestLane:
    def test_name_is_truncated(self):
        lane = Lane(id=0, name="A very long lane name")
        assert len(lane.name) == 12

    def test_empty_name_gets_default(self):
        assert Lane(id=2, name="").name == "Lane 3"

    def test_region_is_clamped_on_creation(self):
        lane = Lane(id=0, name="L", region=Region(0.9, 0.9, 0.5, 0.5))
        assert lane.region.x + lane.region.width <= 1.0

    def test_with_changes(self):
        lane = Lane(id=1, name="Red")
        changed = lane.with_changes(enabled=False, name="Blue")
        assert changed.enabled is False
        assert changed.name == "Blue"
        assert lane.enabled is True

    def test_id_cannot_change(self):
        with pytest.raises(ValueError):
            Lane(id=1, name="Red").with_changes(id=3)

    def test_dict_round_trip(self):
        lane = Lane(id=1, name="Blue", color="#3b82f6", enabled=False)
        assert Lane.from_dict(lane.to_dict()) == lane


# ---------------------------------------------------------------------------
# create_default_lanes
# ---------------------------------------------------------------------------


class TestDefaultLanes:
    def test_two_lanes_stacked_and_centred(self):
        lanes = create_default_lanes(2)
        assert [lane.name for lane in lanes] == ["Lane 1", "Lane 2"]
        assert lanes[0].region.y == pytest.approx(0.34)
        assert lanes[1].region.y == pytest.approx(0.51)
        assert all(lane.region.width == pytest.approx(0.5) for lane in lanes)

    def test_regions_do_not_overlap(self):
        lanes = create_default_lanes(4)
        for upper, lower in zip(lanes, lanes[1:]):
            assert upper.region.y + upper.region.height < lower.region.y

    def test_distinct_colors(self):
        lanes = create_default_lanes(4)
        assert len({lane.color for lane in lanes}) == 4

    @pytest.mark.parametrize("count", [0, 5])
    def test_invalid_count(self, count):
        with pytest.raises(ValueError):
            create_default_lanes(count)

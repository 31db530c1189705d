"""Tests for slotcam.config and slotcam.storage modules."""

import json

import pytest

from slotcam.config import (
    CONFIG_KEY,
    DetectionConfig,
    RaceMode,
    TimerConfig,
    load_config,
    save_config,
)
from slotcam.lanes import Lane, Region, create_default_lanes
from slotcam.storage import FileStore, MemoryStore


# ---------------------------------------------------------------------------
# DetectionConfig / TimerConfig
# ---------------------------------------------------------------------------


class TestTimerConfig:
    def test_defaults(self):
        config = TimerConfig()
        assert config.detection == DetectionConfig(12.0, 400.0, 2)
        assert config.lane_count == 2
        assert config.race_mode is RaceMode.FREE
        assert config.target_laps == 10
        assert config.target_time_s == 300.0

    @pytest.mark.parametrize(
        "kwargs,field,expected",
        [
            ({"threshold": 0}, "threshold", 1.0),
            ({"threshold": 250}, "threshold", 100.0),
            ({"cooldown_ms": 50}, "cooldown_ms", 100.0),
            ({"cooldown_ms": 9000}, "cooldown_ms", 2000.0),
            ({"smoothing": 0}, "smoothing", 1),
            ({"smoothing": 30}, "smoothing", 10),
        ],
    )
    def test_detection_clamped(self, kwargs, field, expected):
        assert getattr(DetectionConfig(**kwargs), field) == expected

    def test_race_settings_clamped(self):
        config = TimerConfig(lane_count=9, target_laps=0, target_time_s=5)
        assert config.lane_count == 4
        assert config.target_laps == 1
        assert config.target_time_s == 60.0

    def test_race_mode_from_string(self):
        assert TimerConfig(race_mode="laps").race_mode is RaceMode.LAPS

    def test_updated_accepts_flat_detection_fields(self):
        config = TimerConfig().updated(threshold=30, race_mode="time")
        assert config.detection.threshold == 30.0
        assert config.detection.cooldown_ms == 400.0
        assert config.race_mode is RaceMode.TIME

    def test_updated_rejects_unknown_field(self):
        with pytest.raises(ValueError):
            TimerConfig().updated(exposure=3)

    def test_dict_round_trip(self):
        config = TimerConfig(race_mode=RaceMode.LAPS, target_laps=25, debug_mode=True)
        config = config.updated(cooldown_ms=650)
        assert TimerConfig.from_dict(json.loads(json.dumps(config.to_dict()))) == config

    def test_partial_dict_takes_defaults(self):
        config = TimerConfig.from_dict({"detection": {"threshold": 20}, "lane_count": 3})
        assert config.detection.threshold == 20.0
        assert config.detection.smoothing == 2
        assert config.lane_count == 3
        assert config.race_mode is RaceMode.FREE


# ---------------------------------------------------------------------------
# load_config / save_config
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_no_store_gives_defaults(self):
        lanes, config = load_config(None)
        assert config == TimerConfig()
        assert len(lanes) == 2

    def test_round_trip(self):
        store = MemoryStore()
        lanes = create_default_lanes(3)
        lanes[1] = lanes[1].with_changes(name="Blue", region=Region(0.1, 0.2, 0.3, 0.1))
        config = TimerConfig(lane_count=3).updated(threshold=18)
        assert save_config(store, lanes, config)
        loaded_lanes, loaded_config = load_config(store)
        assert loaded_lanes == lanes
        assert loaded_config == config

    def test_corrupt_entry_falls_back(self):
        store = MemoryStore({CONFIG_KEY: b"\x00garbage"})
        lanes, config = load_config(store)
        assert config == TimerConfig()
        assert [lane.name for lane in lanes] == ["Lane 1", "Lane 2"]

    def test_missing_lanes_use_lane_count(self):
        payload = {"timer": {"lane_count": 4}}
        store = MemoryStore({CONFIG_KEY: json.dumps(payload).encode()})
        lanes, config = load_config(store)
        assert len(lanes) == 4

    def test_stored_region_is_clamped(self):
        payload = {
            "lanes": [{"id": 0, "name": "A", "roi": {"x": 0.9, "y": 0.9, "width": 0.5, "height": 0.5}}],
            "timer": {"lane_count": 1},
        }
        store = MemoryStore({CONFIG_KEY: json.dumps(payload).encode()})
        lanes, _ = load_config(store)
        assert lanes[0].region.x + lanes[0].region.width <= 1.0

    def test_save_without_store(self):
        assert save_config(None, [Lane(id=0, name="A")], TimerConfig()) is False


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestMemoryStore:
    def test_load_save_delete(self):
        store = MemoryStore()
        assert store.load("k") is None
        store.save("k", b"v")
        assert store.load("k") == b"v"
        store.delete("k")
        store.delete("k")
        assert "k" not in store


class TestFileStore:
    def test_load_save_delete(self, tmp_path):
        store = FileStore(tmp_path / "state")
        assert store.load("slotcam-config-v2") is None
        store.save("slotcam-config-v2", b'{"a": 1}')
        assert (tmp_path / "state" / "slotcam-config-v2.json").read_bytes() == b'{"a": 1}'
        assert store.load("slotcam-config-v2") == b'{"a": 1}'
        store.delete("slotcam-config-v2")
        assert store.load("slotcam-config-v2") is None

    def test_overwrite_leaves_no_temp_files(self, tmp_path):
        store = FileStore(tmp_path)
        store.save("key", b"1")
        store.save("key", b"2")
        assert store.load("key") == b"2"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["key.json"]

    @pytest.mark.parametrize("key", ["../escape", "a/b", ""])
    def test_unsafe_keys_rejected(self, tmp_path, key):
        with pytest.raises(ValueError):
            FileStore(tmp_path).save(key, b"x")

    def test_config_via_file_store(self, tmp_path):
        store = FileStore(tmp_path)
        lanes = create_default_lanes(1)
        save_config(store, lanes, TimerConfig(lane_count=1))
        loaded_lanes, config = load_config(FileStore(tmp_path))
        assert loaded_lanes == lanes
        assert config.lane_count == 1

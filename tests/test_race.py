"""Tests for slotcam.race module."""

import pytest

from slotcam.config import RaceMode, TimerConfig
from slotcam.race import RaceController, TerminationCause
from slotcam.trigger import CrossingEvent, TriggerState


def laps_controller(target=5, lanes=(0, 1)):
    controller = RaceController(TimerConfig(race_mode=RaceMode.LAPS, target_laps=target))
    controller.start(0.0, lanes)
    return controller


def cross(controller, t, *lane_ids):
    return controller.apply_crossings([CrossingEvent(i, t) for i in lane_ids], t)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_arms_every_lane(self):
        controller = RaceController()
        assert controller.start(100.0, [0, 1], idle_lane_ids=[2])
        assert controller.is_running
        assert controller.states[0].is_running
        assert controller.states[0].last_lap_time == 100.0
        assert controller.trigger_state(0) is TriggerState.ARMED
        # Disabled lane is present but never runs
        assert controller.states[2].is_running is False
        assert controller.trigger_state(2) is TriggerState.IDLE

    def test_start_while_running_is_noop(self):
        controller = RaceController()
        controller.start(0.0, [0])
        assert controller.start(500.0, [0, 1]) is False
        assert controller.start_time == 0.0
        assert 1 not in controller.states

    def test_stop_is_idempotent(self):
        controller = RaceController()
        controller.start(0.0, [0])
        ended = controller.stop(1500.0)
        assert ended.cause is TerminationCause.MANUAL_STOP
        assert ended.elapsed_ms == 1500.0
        assert controller.stop(2000.0) is None
        assert controller.elapsed(9999.0) == 1500.0

    def test_stop_keeps_laps(self):
        controller = RaceController()
        controller.start(0.0, [0])
        cross(controller, 1000.0, 0)
        controller.stop(1500.0)
        assert controller.states[0].lap_count == 1
        assert controller.trigger_state(0) is TriggerState.IDLE

    def test_reset(self):
        controller = RaceController()
        controller.start(0.0, [0])
        cross(controller, 1000.0, 0)
        controller.reset()
        assert controller.states == {}
        assert controller.start_time is None
        assert controller.termination_cause is TerminationCause.NONE
        controller.reset()
        assert controller.states == {}

    def test_evaluate_after_stop(self):
        controller = RaceController()
        controller.start(0.0, [0])
        controller.stop(100.0)
        assert controller.evaluate(0, 99.0, 1000.0) is None
        # Score is still reported while stopped
        assert controller.states[0].diff_score == 99.0

    def test_evaluate_uses_detection_config(self):
        controller = RaceController(TimerConfig().updated(threshold=30.0))
        controller.start(0.0, [0])
        assert controller.evaluate(0, 29.0, 100.0) is None
        assert controller.evaluate(0, 31.0, 200.0) == CrossingEvent(0, 200.0)

    def test_unknown_lane_ignored(self):
        controller = RaceController()
        controller.start(0.0, [0])
        assert controller.evaluate(7, 50.0, 100.0) is None
        added, ended = cross(controller, 100.0, 7)
        assert added == [] and ended is None


# ---------------------------------------------------------------------------
# Laps mode
# ---------------------------------------------------------------------------


class TestLapsMode:
    def test_first_to_target_wins(self):
        controller = laps_controller(target=2)
        cross(controller, 1000.0, 0)
        cross(controller, 1100.0, 1)
        added, ended = cross(controller, 2000.0, 0)
        assert len(added) == 1
        assert ended is not None
        assert ended.cause is TerminationCause.LAPS_REACHED
        assert ended.winner == 0
        assert controller.winner == 0
        assert not controller.is_running

    def test_same_frame_finish_keeps_both_laps(self):
        """Both lanes reach 5 laps in one frame; the batch order decides."""
        controller = laps_controller(target=5)
        for k in range(1, 5):
            cross(controller, k * 1000.0, 0, 1)
        added, ended = cross(controller, 5000.0, 1, 0)
        assert [a.lap.lane_id for a in added] == [1, 0]
        assert ended.winner == 1
        assert controller.states[0].lap_count == 5
        assert controller.states[1].lap_count == 5

    def test_no_laps_after_end(self):
        controller = laps_controller(target=1)
        cross(controller, 1000.0, 0)
        added, ended = cross(controller, 1500.0, 1)
        assert added == [] and ended is None
        assert controller.states[1].lap_count == 0

    def test_lap_count_never_exceeds_target_for_winner(self):
        controller = laps_controller(target=3)
        for k in range(1, 10):
            cross(controller, k * 700.0, 0)
        assert controller.states[0].lap_count == 3


# ---------------------------------------------------------------------------
# Time mode
# ---------------------------------------------------------------------------


class TestTimeMode:
    def test_target_time_has_one_minute_minimum(self):
        config = TimerConfig(race_mode=RaceMode.TIME, target_time_s=10)
        assert config.target_time_ms == 60000.0

    def test_ends_after_target_time(self):
        controller = RaceController(TimerConfig(race_mode=RaceMode.TIME, target_time_s=60))
        controller.start(0.0, [0, 1])
        cross(controller, 20000.0, 0)
        cross(controller, 21000.0, 1)
        cross(controller, 40000.0, 0)
        assert controller.check_time_expired(59999.0) is None
        ended = controller.check_time_expired(60000.0)
        assert ended.cause is TerminationCause.TIME_ELAPSED
        assert ended.winner == 0
        assert controller.check_time_expired(70000.0) is None

    def test_tie_goes_to_best_lap(self):
        controller = RaceController(TimerConfig(race_mode=RaceMode.TIME, target_time_s=60))
        controller.start(0.0, [0, 1])
        cross(controller, 10000.0, 0)
        cross(controller, 9000.0, 1)
        ended = controller.check_time_expired(60000.0)
        assert ended.winner == 1

    def test_full_tie_goes_to_lower_lane(self):
        controller = RaceController(TimerConfig(race_mode=RaceMode.TIME, target_time_s=60))
        controller.start(0.0, [2, 1])
        cross(controller, 10000.0, 2, 1)
        assert controller.check_time_expired(60000.0).winner == 1

    def test_no_laps_no_winner(self):
        controller = RaceController(TimerConfig(race_mode=RaceMode.TIME, target_time_s=60))
        controller.start(0.0, [0])
        assert controller.check_time_expired(60000.0).winner is None

    def test_free_mode_never_ends(self):
        controller = RaceController(TimerConfig(race_mode=RaceMode.FREE))
        controller.start(0.0, [0])
        for k in range(1, 50):
            assert cross(controller, k * 1000.0, 0)[1] is None
        assert controller.check_time_expired(10_000_000.0) is None
        assert controller.is_running


# ---------------------------------------------------------------------------
# Standings / restore / resume
# ---------------------------------------------------------------------------


class TestStandings:
    def test_ordering_and_delta(self):
        controller = RaceController()
        controller.start(0.0, [0, 1, 2])
        cross(controller, 1000.0, 0)
        cross(controller, 1200.0, 1)
        cross(controller, 2500.0, 0)
        rows = controller.standings()
        assert [r.lane_id for r in rows] == [0, 1, 2]
        assert [r.position for r in rows] == [1, 2, 3]
        assert rows[0].laps_completed == 2
        assert rows[0].best_lap == 1000.0
        assert rows[0].last_lap == 1500.0
        assert rows[0].delta == pytest.approx(500.0)
        assert rows[2].best_lap is None and rows[2].delta is None

    def test_equal_laps_ranked_by_best(self):
        controller = RaceController()
        controller.start(0.0, [0, 1])
        cross(controller, 1000.0, 0)
        cross(controller, 800.0, 1)
        assert [r.lane_id for r in controller.standings()] == [1, 0]

    def test_filtered_lanes(self):
        controller = RaceController()
        controller.start(0.0, [0, 1])
        assert [r.lane_id for r in controller.standings([1, 5])] == [1]


class TestResume:
    def _stopped(self):
        controller = RaceController()
        controller.start(0.0, [0])
        cross(controller, 1000.0, 0)
        controller.stop(1500.0)
        return controller

    def test_resume_continues_elapsed_time(self):
        controller = self._stopped()
        assert controller.resume(10000.0)
        assert controller.is_running
        assert controller.elapsed(10500.0) == pytest.approx(2000.0)

    def test_first_crossing_after_resume_rearms(self):
        controller = self._stopped()
        controller.resume(10000.0)
        added, _ = cross(controller, 10200.0, 0)
        assert added == []
        added, _ = cross(controller, 11000.0, 0)
        assert added[0].lap.lap_number == 2
        assert added[0].lap.lap_time == 800.0

    def test_cannot_resume_finished_race(self):
        controller = laps_controller(target=1)
        cross(controller, 1000.0, 0)
        assert controller.resume(5000.0) is False

    def test_cannot_resume_without_states(self):
        assert RaceController().resume(0.0) is False

    def test_restore_is_not_running(self):
        source = self._stopped()
        state = source.states[0].copy()
        state.is_running = True
        controller = RaceController()
        controller.restore({0: state}, start_time=0.0, elapsed_ms=1500.0)
        assert not controller.is_running
        assert not controller.states[0].is_running
        assert controller.elapsed(99999.0) == 1500.0
        assert controller.resume(3000.0)
        assert controller.start_time == 1500.0

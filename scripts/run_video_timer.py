#!/usr/bin/env python3
"""Run the lap timer over a recorded (or live) slot-car video.

Feeds every frame of a video file or camera through the lap timer engine,
prints laps as they are detected and writes a lap CSV at the end.

Usage:
    python scripts/run_video_timer.py path/to/race.mp4
    python scripts/run_video_timer.py path/to/race.mp4 --lanes 2 --calibrate
    python scripts/run_video_timer.py path/to/race.mp4 --region 0,0.25,0.4,0.5,0.15
    python scripts/run_video_timer.py path/to/race.mp4 --mode laps --target-laps 10
    python scripts/run_video_timer.py path/to/race.mp4 --state-dir runs/state --recover
    python scripts/run_video_timer.py 0 --show          # webcam 0
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2

# Add src to path for local imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from slotcam.config import CALIBRATION_DURATION_MS, TimerConfig, load_config, save_config
from slotcam.engine import LapTimerEngine
from slotcam.export import export_laps_csv, format_time, format_time_short, results_summary
from slotcam.history import SessionHistory
from slotcam.lanes import Lane, Region, create_default_lanes
from slotcam.ledger import LapAdded
from slotcam.race import RaceEnded
from slotcam.sampling import RegionSampler
from slotcam.snapshot import SnapshotRecorder
from slotcam.storage import FileStore, KeyValueStore


def parse_region(text: str) -> Tuple[int, Region]:
    """Parse ``lane,x,y,w,h`` into a lane id and region."""
    parts = text.split(",")
    if len(parts) != 5:
        raise argparse.ArgumentTypeError(f"Expected lane,x,y,w,h, got {text!r}")
    try:
        lane_id = int(parts[0])
        x, y, w, h = (float(p) for p in parts[1:])
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid region: {text!r}")
    return lane_id, Region(x, y, w, h).clamped()


def hex_to_bgr(color: str) -> Tuple[int, int, int]:
    color = color.lstrip("#")
    if len(color) != 6:
        return (255, 255, 255)
    r, g, b = int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)
    return (b, g, r)


def draw_overlay(frame, engine: LapTimerEngine, flashes: List[int]) -> None:
    h, w = frame.shape[:2]
    for lane in engine.lanes:
        if not lane.enabled:
            continue
        x, y, rw, rh = lane.region.to_pixel_bounds(w, h)
        color = hex_to_bgr(lane.color)
        thickness = 4 if lane.id in flashes else 2
        cv2.rectangle(frame, (x, y), (x + rw, y + rh), color, thickness)
        state = engine.lane_state(lane.id)
        label = f"{lane.name}  L{state.lap_count}  s={engine.score(lane.id):.1f}"
        cv2.putText(frame, label, (x, max(15, y - 6)), cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1)


def build_settings(args, store: Optional[KeyValueStore]) -> Tuple[List[Lane], TimerConfig]:
    """Saved settings (or defaults) with the flags given on the command line on top."""
    lanes, config = load_config(store)
    flags = {
        "lane_count": args.lanes,
        "threshold": args.threshold,
        "cooldown_ms": args.cooldown,
        "smoothing": args.smoothing,
        "race_mode": args.mode,
        "target_laps": args.target_laps,
        "target_time_s": args.target_time,
    }
    config = config.updated(**{k: v for k, v in flags.items() if v is not None})
    if len(lanes) != config.lane_count:
        lanes = create_default_lanes(config.lane_count)
    for lane_id, region in args.region or []:
        if not 0 <= lane_id < len(lanes):
            raise ValueError(f"--region lane {lane_id} out of range (0-{len(lanes) - 1})")
        lanes[lane_id] = lanes[lane_id].with_changes(region=region)
    return lanes, config


def recover_race(engine: LapTimerEngine, recorder: SnapshotRecorder, now: float = 0.0) -> bool:
    """Restore and resume a recent interrupted race, if one was saved."""
    snapshot = recorder.load_recoverable()
    if snapshot is None:
        return False
    engine.restore(snapshot)
    return engine.resume_race(now=now)


def run(args) -> int:
    source = int(args.video) if args.video.isdigit() else args.video
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        print(f"ERROR: Cannot open video: {args.video}")
        return 1

    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    store = FileStore(args.state_dir) if args.state_dir else None
    try:
        lanes, config = build_settings(args, store)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1
    if store is not None:
        save_config(store, lanes, config)
    recorder = SnapshotRecorder(store) if store is not None else None
    engine = LapTimerEngine(
        lanes=lanes,
        config=config,
        store=store,
        sampler=RegionSampler(downscale=args.downscale, bgr=True),
        max_fps=args.max_fps,
        recorder=recorder,
    )

    flashes: List[int] = []

    def on_lap(event: LapAdded) -> None:
        lap = event.lap
        name = engine.lane(lap.lane_id).name
        best = "  (best)" if event.is_best else ""
        print(f"  {name:<12} lap {lap.lap_number:>3}  {format_time_short(lap.lap_time)}{best}")
        flashes.append(lap.lane_id)

    def on_end(event: RaceEnded) -> None:
        winner = engine.lane(event.winner).name if event.winner is not None else "-"
        print(f"\nRace ended: {event.cause.value}, winner: {winner}")

    def on_calibrated(threshold: float) -> None:
        print(f"Calibrated threshold: {threshold:.0f}")

    engine.on_lap_added.append(on_lap)
    engine.on_race_ended.append(on_end)
    engine.on_calibrated.append(on_calibrated)

    print("=" * 60)
    print("Slot-Car Lap Timer")
    print("=" * 60)
    print(f"Source:    {args.video} ({fps:.1f} fps)")
    print(f"Lanes:     {len(lanes)}")
    print(f"Mode:      {config.race_mode.value}")
    print(f"Threshold: {config.detection.threshold:.0f}  cooldown: {config.detection.cooldown_ms:.0f} ms")
    print()

    frame_idx = 0
    race_started = False
    if recorder is not None and args.recover and recover_race(engine, recorder):
        race_started = True
        print(f"Resumed recovered race with {len(engine.all_laps())} laps")
    elif args.calibrate:
        engine.start_calibration(now=0.0)
    else:
        engine.start_race(now=0.0)
        race_started = True

    while True:
        ok, frame = cap.read()
        if not ok:
            break
        now = frame_idx * 1000.0 / fps
        frame_idx += 1
        flashes.clear()

        engine.process_frame(frame, now=now)
        if recorder is not None:
            recorder.maybe_save(engine, now)

        if not race_started and not engine.is_calibrating and now >= CALIBRATION_DURATION_MS:
            engine.start_race(now=now)
            race_started = True
            print("Race started")

        if args.show:
            draw_overlay(frame, engine, flashes)
            cv2.imshow("slotcam", frame)
            if cv2.waitKey(1) & 0xFF == ord("q"):
                break

        if race_started and not engine.is_running:
            break

    end_time = frame_idx * 1000.0 / fps
    engine.stop_race(now=end_time)
    cap.release()
    if args.show:
        cv2.destroyAllWindows()

    laps = engine.all_laps()
    print()
    print(results_summary(laps, engine.lanes, engine.elapsed(end_time)) or "No laps recorded")

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    rows = export_laps_csv(laps, engine.lanes, output)
    if store is not None:
        session = SessionHistory(store).archive(laps, engine.lanes, engine.elapsed(end_time))
        if session is not None:
            print(f"Session: {session.id} archived in {args.state_dir}")
    print(f"Frames:  {frame_idx} ({format_time(end_time)})")
    print(f"Laps:    {rows} -> {output}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Optical lap timer over a video file or camera")
    parser.add_argument("video", type=str, help="Path to input video, or a camera index")
    parser.add_argument("--lanes", type=int, choices=[1, 2, 3, 4], help="Number of lanes (default 2)")
    parser.add_argument(
        "--region",
        type=parse_region,
        action="append",
        help="Finish-line region for one lane: lane,x,y,w,h in normalized coords "
             "(repeatable). Defaults to stacked horizontal bands.",
    )
    parser.add_argument("--threshold", type=float, help="Trigger threshold (1-100, default 12)")
    parser.add_argument("--cooldown", type=float, help="Cooldown between laps in ms (default 400)")
    parser.add_argument("--smoothing", type=int, help="Smoothing window in frames (default 2)")
    parser.add_argument("--downscale", type=int, default=4, help="Region downscale factor")
    parser.add_argument(
        "--max-fps",
        type=float,
        default=30.0,
        help="Drop frames arriving faster than this rate (0 = process all)",
    )
    parser.add_argument(
        "--calibrate",
        action="store_true",
        help="Calibrate the threshold on the first 3 s (keep the track clear), then race",
    )
    parser.add_argument("--mode", type=str, choices=["free", "laps", "time"], help="Race mode (default free)")
    parser.add_argument("--target-laps", type=int, help="Laps to win in laps mode (default 10)")
    parser.add_argument("--target-time", type=float, help="Race length in seconds (default 300)")
    parser.add_argument("--output", type=str, default="runs/laps.csv", help="Lap CSV path")
    parser.add_argument(
        "--state-dir",
        type=str,
        default=None,
        help="Directory for saved settings, crash recovery and the race history (optional). "
             "Saved settings apply unless overridden by the flags above.",
    )
    parser.add_argument(
        "--recover",
        action="store_true",
        help="Resume the race interrupted within the last hour (needs --state-dir)",
    )
    parser.add_argument("--show", action="store_true", help="Show video while processing")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run(args))


if __name__ == "__main__":
    main()

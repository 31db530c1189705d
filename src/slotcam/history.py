"""Archive of finished races."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from slotcam.lanes import Lane
from slotcam.ledger import LapRecord
from slotcam.storage import KeyValueStore

log = logging.getLogger(__name__)

HISTORY_KEY = "slotcam-sessions-v1"
MAX_SESSIONS = 20


@dataclass(frozen=True)
class RaceSession:
    """Summary of one archived race."""

    id: str
    date: str  # ISO 8601
    duration: float  # ms
    laps: Tuple[LapRecord, ...]
    lanes: Tuple[Lane, ...]
    best_lap_time: Optional[float]
    best_lap_lane: Optional[int]
    total_laps: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "duration": self.duration,
            "laps": [lap.to_dict() for lap in self.laps],
            "lanes": [lane.to_dict() for lane in self.lanes],
            "bestLapTime": self.best_lap_time,
            "bestLapLane": self.best_lap_lane,
            "totalLaps": self.total_laps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RaceSession":
        return cls(
            id=str(data["id"]),
            date=str(data["date"]),
            duration=float(data["duration"]),
            laps=tuple(LapRecord.from_dict(d) for d in data.get("laps", [])),
            lanes=tuple(Lane.from_dict(d) for d in data.get("lanes", [])),
            best_lap_time=data.get("bestLapTime"),
            best_lap_lane=data.get("bestLapLane"),
            total_laps=int(data.get("totalLaps", 0)),
        )


class SessionHistory:
    """Newest-first list of at most :data:`MAX_SESSIONS` archived races.

    Every change is written through to *store*; read and write failures are
    logged and never raised.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store
        self.sessions: List[RaceSession] = self._load()

    def _load(self) -> List[RaceSession]:
        if self.store is None:
            return []
        try:
            raw = self.store.load(HISTORY_KEY)
            if raw is None:
                return []
            return [RaceSession.from_dict(d) for d in json.loads(raw.decode("utf-8"))]
        except Exception as e:
            log.warning("Failed to load session history: %s", e)
            return []

    def _save(self) -> None:
        if self.store is None:
            return
        payload = [s.to_dict() for s in self.sessions[:MAX_SESSIONS]]
        try:
            self.store.save(HISTORY_KEY, json.dumps(payload).encode("utf-8"))
        except Exception as e:
            log.warning("Failed to save session history: %s", e)

    def archive(
        self, laps: Sequence[LapRecord], lanes: Sequence[Lane], duration: float
    ) -> Optional[RaceSession]:
        """Archive a finished race.  Races without laps are not kept."""
        if not laps:
            return None
        best = min(laps, key=lambda lap: lap.lap_time)
        session = RaceSession(
            id=uuid.uuid4().hex[:12],
            date=datetime.now(timezone.utc).isoformat(),
            duration=duration,
            laps=tuple(laps),
            lanes=tuple(lanes),
            best_lap_time=best.lap_time,
            best_lap_lane=best.lane_id,
            total_laps=len(laps),
        )
        self.sessions = [session] + self.sessions[: MAX_SESSIONS - 1]
        self._save()
        return session

    def delete(self, session_id: str) -> bool:
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if len(self.sessions) == before:
            return False
        self._save()
        return True

    def clear(self) -> None:
        self.sessions = []
        self._save()

    def best_lap_ever(self) -> Optional[Tuple[float, RaceSession]]:
        """Fastest lap across all archived races, with its session."""
        best: Optional[Tuple[float, RaceSession]] = None
        for session in self.sessions:
            if session.best_lap_time is None:
                continue
            if best is None or session.best_lap_time < best[0]:
                best = (session.best_lap_time, session)
        return best

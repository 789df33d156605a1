"""
Draft persistence for in-progress shift closings.

Drafts are JSON blobs keyed by (station, shift), stamped with a version and an
epoch-millisecond timestamp. A draft is only handed back when it belongs to the
expected shift, is younger than the TTL, and parses; anything else is removed
and treated as absent.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import stat
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from station_ops.shift_closing.config import ShiftClosingConfig
from station_ops.shift_closing.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)

DRAFT_VERSION = 1
KEY_PREFIX = "shift_closing_draft"
CLOCK_SKEW_MS = 60 * 1000

Clock = Callable[[], float]  # epoch seconds


def draft_key(station_id: str, shift_id: str) -> str:
    return f"{KEY_PREFIX}:{station_id}:{shift_id}"


def station_prefix(station_id: str) -> str:
    return f"{KEY_PREFIX}:{station_id}:"


def _object_list(data: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    items = data.get(name) or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError(f"{name} must be a list of objects")
    return list(items)


@dataclass
class DraftSnapshot:
    """Serializable state of a closing session."""

    station_id: str
    shift_id: str
    step: str
    meter_type: Optional[str] = None
    pumps: List[Dict[str, Any]] = field(default_factory=list)
    tanks: List[Dict[str, Any]] = field(default_factory=list)
    islands: List[Dict[str, Any]] = field(default_factory=list)
    station_collection: Optional[Dict[str, Any]] = None
    non_fuel: List[Dict[str, Any]] = field(default_factory=list)
    notes: str = ""
    has_issues: bool = False
    timestamp: int = 0  # epoch milliseconds
    version: int = DRAFT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pumps": self.pumps,
            "tanks": self.tanks,
            "islands": self.islands,
            "meterType": self.meter_type,
            "step": self.step,
            "shiftId": self.shift_id,
            "stationId": self.station_id,
            "timestamp": self.timestamp,
            "version": self.version,
            "stationCollection": self.station_collection,
            "nonFuel": self.non_fuel,
            "notes": self.notes,
            "hasIssues": self.has_issues,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DraftSnapshot":
        if not isinstance(data, dict):
            raise ValueError("draft blob is not an object")
        station_collection = data.get("stationCollection")
        if station_collection is not None and not isinstance(station_collection, dict):
            raise ValueError("stationCollection must be an object")
        return cls(
            station_id=str(data["stationId"]),
            shift_id=str(data["shiftId"]),
            step=str(data["step"]),
            meter_type=data.get("meterType"),
            pumps=_object_list(data, "pumps"),
            tanks=_object_list(data, "tanks"),
            islands=_object_list(data, "islands"),
            station_collection=station_collection,
            non_fuel=_object_list(data, "nonFuel"),
            notes=str(data.get("notes") or ""),
            has_issues=bool(data.get("hasIssues", False)),
            timestamp=int(data["timestamp"]),
            version=int(data["version"]),
        )


class InMemoryDraftBackend:
    """Process-local key -> blob store."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, blob: str) -> None:
        with self._lock:
            self._data[key] = blob

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SqliteDraftBackend:
    """Key -> blob store in a local SQLite file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self) -> None:
        with self._lock:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = self._connect()
                try:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS shift_closing_drafts (
                            key TEXT PRIMARY KEY,
                            blob TEXT NOT NULL,
                            updated_at INTEGER NOT NULL
                        )
                    """)
                    conn.commit()
                finally:
                    conn.close()
            except (sqlite3.Error, OSError) as exc:
                raise PersistenceFailure(f"Cannot initialise draft store at {self.db_path}: {exc}") from exc

        try:
            self.db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError as exc:
            # Some filesystems reject chmod; the store still works.
            logger.debug("Could not restrict permissions on %s: %s", self.db_path, exc)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    row = conn.execute(
                        "SELECT blob FROM shift_closing_drafts WHERE key = ?", (key,)
                    ).fetchone()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Draft read failed for {key}: {exc}") from exc
        return row[0] if row else None

    def put(self, key: str, blob: str) -> None:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(
                        """
                        INSERT INTO shift_closing_drafts (key, blob, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET blob = excluded.blob, updated_at = excluded.updated_at
                        """,
                        (key, blob, int(time.time())),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Draft write failed for {key}: {exc}") from exc

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    cur = conn.execute("DELETE FROM shift_closing_drafts WHERE key = ?", (key,))
                    conn.commit()
                    return cur.rowcount > 0
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Draft delete failed for {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    rows = conn.execute(
                        "SELECT key FROM shift_closing_drafts WHERE substr(key, 1, ?) = ? ORDER BY key",
                        (len(prefix), prefix),
                    ).fetchall()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Draft scan failed for prefix {prefix!r}: {exc}") from exc
        return [r[0] for r in rows]


class DraftStore:
    """TTL-bounded draft persistence over a key -> blob backend."""

    def __init__(self, backend, ttl_seconds: float, clock: Clock = time.time):
        self.backend = backend
        self.ttl_ms = int(round(float(ttl_seconds) * 1000))
        self.clock = clock

    def now_ms(self) -> int:
        return int(round(self.clock() * 1000))

    def save(self, key: str, snapshot: DraftSnapshot) -> DraftSnapshot:
        """
        Write `snapshot` under `key` and return what was stored.

        The current time is stamped when the snapshot has no timestamp yet.
        Backend errors surface as PersistenceFailure.
        """
        stored = replace(
            snapshot,
            timestamp=snapshot.timestamp or self.now_ms(),
            version=DRAFT_VERSION,
        )
        self.backend.put(key, json.dumps(stored.to_dict()))
        return stored

    def _rejection_reason(self, blob: str, expected_shift_id: str) -> tuple[Optional[DraftSnapshot], str]:
        try:
            snapshot = DraftSnapshot.from_dict(json.loads(blob))
        except (ValueError, TypeError, KeyError) as exc:
            return None, f"corrupt ({exc})"
        if snapshot.version != DRAFT_VERSION:
            return None, f"version {snapshot.version} != {DRAFT_VERSION}"
        if snapshot.shift_id != str(expected_shift_id):
            return None, f"shift mismatch (stored {snapshot.shift_id}, expected {expected_shift_id})"
        age_ms = self.now_ms() - snapshot.timestamp
        if age_ms < -CLOCK_SKEW_MS:
            return None, f"corrupt (timestamp {snapshot.timestamp} is {-age_ms} ms in the future)"
        if age_ms > self.ttl_ms:
            return None, f"expired (age {age_ms} ms > ttl {self.ttl_ms} ms)"
        return snapshot, ""

    def _discard(self, key: str, reason: str) -> None:
        logger.warning("Discarding draft %s: %s", key, reason)
        try:
            self.backend.delete(key)
        except PersistenceFailure:
            logger.exception("Could not remove rejected draft %s", key)

    def load(self, key: str, expected_shift_id: str) -> Optional[DraftSnapshot]:
        """
        Return the draft under `key`, or None.

        A draft for another shift, older than the TTL, stamped in the future,
        of another version, or unparsable is removed and reported as None.
        """
        blob = self.backend.get(key)
        if blob is None:
            return None
        snapshot, reason = self._rejection_reason(blob, expected_shift_id)
        if snapshot is None:
            self._discard(key, reason)
            return None
        return snapshot

    def invalidate(self, key: str) -> bool:
        removed = bool(self.backend.delete(key))
        if removed:
            logger.info("Invalidated draft %s", key)
        return removed

    def sweep(self, prefix: str, expected_shift_id: str) -> int:
        """Remove every stale or mismatched draft under `prefix`. Returns the number removed."""
        removed = 0
        for key in self.backend.keys(prefix):
            blob = self.backend.get(key)
            if blob is None:
                continue
            snapshot, reason = self._rejection_reason(blob, expected_shift_id)
            if snapshot is None:
                self._discard(key, reason)
                removed += 1
        if removed:
            logger.info("Swept %s stale draft(s) under %s", removed, prefix)
        return removed


def draft_store_from_config(config: ShiftClosingConfig, clock: Clock = time.time) -> DraftStore:
    """SQLite-backed store at `config.draft_db_path` with the configured TTL."""
    return DraftStore(SqliteDraftBackend(config.draft_db_path), config.draft_ttl_seconds, clock=clock)


class DraftAutosaver:
    """
    Periodic safety-net autosave on a background APScheduler job.

    `save` is expected to log its own failures; anything it raises is logged
    here and the job simply runs again on the next interval.
    """

    def __init__(self, save: Callable[[], object], interval_seconds: int = 30, job_id: str = "draft_autosave"):
        self.save = save
        self.interval_seconds = max(1, int(interval_seconds))
        self.job_id = job_id
        self._scheduler: Optional[BackgroundScheduler] = None

    def _run(self) -> None:
        try:
            self.save()
        except Exception:
            logger.exception("Autosave tick failed; retrying on next interval")

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Autosave started: every %ss (%s)", self.interval_seconds, self.job_id)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def __enter__(self) -> "DraftAutosaver":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

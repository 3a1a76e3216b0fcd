#!/usr/bin/env python3
"""
Baseline and Controller State Persistence
Keyed store for the 7x24 learned-throughput table of each link/direction
and for each link's live ControllerState.
"""

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import BaselineSlot, ControllerState, Direction

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
HOURS_PER_DAY = 24
SLOTS_PER_TABLE = DAYS_PER_WEEK * HOURS_PER_DAY

SlotKey = Tuple[str, Direction, int, int]


class PersistenceError(Exception):
    """The durable store could not complete a read or write"""


class PersistenceStore:
    """Durable, atomic upserts keyed by link id"""

    def get_slot(self, link_id: str, direction: Direction, day: int, hour: int) -> Optional[BaselineSlot]:
        raise NotImplementedError

    def upsert_slot(self, slot: BaselineSlot):
        raise NotImplementedError

    def list_slots(self, link_id: str, direction: Direction) -> List[BaselineSlot]:
        raise NotImplementedError

    def load_state(self, link_id: str) -> Optional[ControllerState]:
        raise NotImplementedError

    def save_state(self, state: ControllerState) -> bool:
        """Store the state; returns False when a newer revision is already stored"""
        raise NotImplementedError

    def delete_link(self, link_id: str):
        raise NotImplementedError

    def acquire_lease(self, link_id: str, owner: str, ttl_seconds: float) -> bool:
        """
        Claim a link for one owner until released or ttl_seconds pass.

        Re-acquiring a lease already held by the same owner extends it.
        Processes sharing the store use this to run one cycle per link at a
        time.
        """
        raise NotImplementedError

    def release_lease(self, link_id: str, owner: str):
        raise NotImplementedError


class InMemoryPersistenceStore(PersistenceStore):
    """Process-local store; used in tests and for dry runs"""

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: Dict[SlotKey, BaselineSlot] = {}
        self._states: Dict[str, dict] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}

    def get_slot(self, link_id, direction, day, hour):
        with self._lock:
            slot = self._slots.get((link_id, direction, day, hour))
            return _copy_slot(slot) if slot else None

    def upsert_slot(self, slot):
        with self._lock:
            self._slots[slot.key] = _copy_slot(slot)

    def list_slots(self, link_id, direction):
        with self._lock:
            return [
                _copy_slot(slot) for key, slot in self._slots.items()
                if key[0] == link_id and key[1] == direction
            ]

    def load_state(self, link_id):
        with self._lock:
            data = self._states.get(link_id)
        return ControllerState.from_dict(data) if data else None

    def save_state(self, state):
        data = state.to_dict()
        with self._lock:
            stored = self._states.get(state.link_id)
            if stored is not None and stored.get("revision", 0) > state.revision:
                return False
            self._states[state.link_id] = data
            return True

    def delete_link(self, link_id):
        with self._lock:
            for key in [k for k in self._slots if k[0] == link_id]:
                del self._slots[key]
            self._states.pop(link_id, None)

    def acquire_lease(self, link_id, owner, ttl_seconds):
        now = time.time()
        with self._lock:
            holder = self._leases.get(link_id)
            if holder is not None and holder[0] != owner and holder[1] > now:
                return False
            self._leases[link_id] = (owner, now + ttl_seconds)
            return True

    def release_lease(self, link_id, owner):
        with self._lock:
            holder = self._leases.get(link_id)
            if holder is not None and holder[0] == owner:
                del self._leases[link_id]


def _copy_slot(slot: BaselineSlot) -> BaselineSlot:
    return BaselineSlot(
        link_id=slot.link_id,
        direction=slot.direction,
        day_of_week=slot.day_of_week,
        hour=slot.hour,
        mbps=slot.mbps,
        sample_count=slot.sample_count,
        last_updated=slot.last_updated,
    )


SCHEMA = """
CREATE TABLE IF NOT EXISTS baseline_slots (
  link_id TEXT NOT NULL, direction TEXT NOT NULL,
  day_of_week INTEGER NOT NULL, hour INTEGER NOT NULL,
  mbps REAL NOT NULL, sample_count INTEGER NOT NULL, last_updated TEXT,
  PRIMARY KEY (link_id, direction, day_of_week, hour)
);
CREATE TABLE IF NOT EXISTS controller_state (
  link_id TEXT PRIMARY KEY, state_json TEXT NOT NULL,
  revision INTEGER NOT NULL DEFAULT 0, updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS link_leases (
  link_id TEXT PRIMARY KEY, owner TEXT NOT NULL, expires_at REAL NOT NULL
);
"""


class SqlitePersistenceStore(PersistenceStore):
    """SQLite-backed store; one short-lived connection per operation"""

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._execute_script(SCHEMA)
        self._add_missing_columns()
        logger.info(f"SQLite persistence initialized: {db_path}")

    def _add_missing_columns(self):
        # Databases written before writers were ordered by revision
        columns = {row[1] for row in self._read("PRAGMA table_info(controller_state)", ())}
        if "revision" not in columns:
            logger.info("Adding revision column to controller_state")
            self._write("ALTER TABLE controller_state ADD COLUMN revision INTEGER NOT NULL DEFAULT 0", ())

    def _connect(self):
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    def _execute_script(self, script: str):
        try:
            conn = self._connect()
            try:
                conn.executescript(script)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Schema initialization failed: {e}")

    def _write(self, sql: str, params: tuple) -> int:
        """Execute one statement in its own transaction; returns the changed row count"""
        try:
            conn = self._connect()
            try:
                with conn:
                    return conn.execute(sql, params).rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Write failed: {e}")

    def _read(self, sql: str, params: tuple) -> list:
        try:
            conn = self._connect()
            try:
                return conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Read failed: {e}")

    @staticmethod
    def _row_to_slot(row) -> BaselineSlot:
        link_id, direction, day, hour, mbps, count, updated = row
        return BaselineSlot(
            link_id=link_id,
            direction=Direction(direction),
            day_of_week=day,
            hour=hour,
            mbps=mbps,
            sample_count=count,
            last_updated=datetime.fromisoformat(updated) if updated else None,
        )

    def get_slot(self, link_id, direction, day, hour):
        rows = self._read(
            "SELECT link_id,direction,day_of_week,hour,mbps,sample_count,last_updated "
            "FROM baseline_slots WHERE link_id=? AND direction=? AND day_of_week=? AND hour=?",
            (link_id, direction.value, day, hour))
        return self._row_to_slot(rows[0]) if rows else None

    def upsert_slot(self, slot):
        self._write(
            "INSERT INTO baseline_slots(link_id,direction,day_of_week,hour,mbps,sample_count,last_updated) "
            "VALUES(?,?,?,?,?,?,?) "
            "ON CONFLICT(link_id,direction,day_of_week,hour) DO UPDATE SET "
            "mbps=excluded.mbps, sample_count=excluded.sample_count, last_updated=excluded.last_updated",
            (slot.link_id, slot.direction.value, slot.day_of_week, slot.hour, slot.mbps,
             slot.sample_count, slot.last_updated.isoformat() if slot.last_updated else None))

    def list_slots(self, link_id, direction):
        rows = self._read(
            "SELECT link_id,direction,day_of_week,hour,mbps,sample_count,last_updated "
            "FROM baseline_slots WHERE link_id=? AND direction=?",
            (link_id, direction.value))
        return [self._row_to_slot(row) for row in rows]

    def load_state(self, link_id):
        rows = self._read("SELECT state_json FROM controller_state WHERE link_id=?", (link_id,))
        if not rows:
            return None
        try:
            return ControllerState.from_dict(json.loads(rows[0][0]))
        except (ValueError, KeyError) as e:
            raise PersistenceError(f"Corrupt controller state for {link_id}: {e}")

    def save_state(self, state):
        changed = self._write(
            "INSERT INTO controller_state(link_id,state_json,revision,updated_at) VALUES(?,?,?,?) "
            "ON CONFLICT(link_id) DO UPDATE SET state_json=excluded.state_json, "
            "revision=excluded.revision, updated_at=excluded.updated_at "
            "WHERE excluded.revision >= controller_state.revision",
            (state.link_id, json.dumps(state.to_dict()), state.revision, datetime.now().isoformat()))
        return changed > 0

    def delete_link(self, link_id):
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM baseline_slots WHERE link_id=?", (link_id,))
                    conn.execute("DELETE FROM controller_state WHERE link_id=?", (link_id,))
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Delete failed: {e}")

    def acquire_lease(self, link_id, owner, ttl_seconds):
        now = time.time()
        changed = self._write(
            "INSERT INTO link_leases(link_id,owner,expires_at) VALUES(?,?,?) "
            "ON CONFLICT(link_id) DO UPDATE SET owner=excluded.owner, expires_at=excluded.expires_at "
            "WHERE link_leases.owner=excluded.owner OR link_leases.expires_at<?",
            (link_id, owner, now + ttl_seconds, now))
        return changed > 0

    def release_lease(self, link_id, owner):
        self._write("DELETE FROM link_leases WHERE link_id=? AND owner=?", (link_id, owner))


class BaselineStore:
    """
    Learned throughput table per link and direction.

    An absent slot means the hour has never been measured (cold start);
    callers treat that as a normal case.
    """

    def __init__(self, persistence: PersistenceStore):
        self.persistence = persistence

    def get(self, link_id: str, direction: Direction, day: int, hour: int) -> Optional[BaselineSlot]:
        return self.persistence.get_slot(link_id, direction, day, hour)

    def upsert(self, slot: BaselineSlot):
        if not (0 <= slot.day_of_week < DAYS_PER_WEEK and 0 <= slot.hour < HOURS_PER_DAY):
            raise ValueError(f"Slot out of range: day={slot.day_of_week} hour={slot.hour}")
        self.persistence.upsert_slot(slot)

    def table(self, link_id: str, direction: Direction) -> Dict[Tuple[int, int], Optional[BaselineSlot]]:
        """Full 168-entry table keyed by (day, hour); unlearned slots are None"""
        table = {
            (day, hour): None
            for day in range(DAYS_PER_WEEK)
            for hour in range(HOURS_PER_DAY)
        }
        for slot in self.persistence.list_slots(link_id, direction):
            table[(slot.day_of_week, slot.hour)] = slot
        return table

    def completion(self, link_id: str, direction: Direction) -> float:
        """Learning progress as percentage of slots with data"""
        learned = len(self.persistence.list_slots(link_id, direction))
        return round(learned * 100.0 / SLOTS_PER_TABLE, 1)

    def delete_link(self, link_id: str):
        self.persistence.delete_link(link_id)

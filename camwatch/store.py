from __future__ import annotations

"""SQLite persistence for the weekly activation calendar and schedule mode."""

import enum
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from camwatch import render

logger = logging.getLogger(__name__)

UPLOAD_SCHED = "upload_sched"

DAY_TOKENS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
HOURS = range(24)


class ScheduleSpecError(ValueError):
    """Raised for a malformed `<day>-<hour>`, `<day>` or `<hour>` spec."""


class ScheduleMode(enum.Enum):
    INVALID = 0
    SCHED = 1
    ON = 2
    OFF = 3

    @property
    def label(self) -> str:
        return {ScheduleMode.SCHED: "Sched", ScheduleMode.ON: "On", ScheduleMode.OFF: "Off"}.get(self, "")

    @classmethod
    def from_str(cls, raw: str) -> "ScheduleMode":
        """Parse `on|off|sched` case-insensitively; anything else is `INVALID`."""
        return {"sched": cls.SCHED, "on": cls.ON, "off": cls.OFF}.get((raw or "").strip().lower(), cls.INVALID)


def parse_sched_spec(spec: str) -> Tuple[Optional[int], Optional[int]]:
    """Parse a schedule spec into `(weekday, hour)`.

    Formats:
    - `mon-5`: one cell, Monday 05:00
    - `mon`: all hours on Monday, returned as `(0, None)`
    - `5`: 05:00 on every day, returned as `(None, 5)`
    """
    text = (spec or "").strip().lower()
    if not text:
        raise ScheduleSpecError("No input given")

    parts = text.split("-")
    if len(parts) == 2:
        day_raw, hour_raw = parts
        if day_raw not in DAY_TOKENS:
            raise ScheduleSpecError(f"Invalid day: {day_raw}")
        return DAY_TOKENS.index(day_raw), _parse_hour(hour_raw, text)

    if len(parts) == 1:
        if text in DAY_TOKENS:
            return DAY_TOKENS.index(text), None
        return None, _parse_hour(text, text)

    raise ScheduleSpecError(f"Invalid day or hour: {text}")


def _parse_hour(raw: str, spec: str) -> int:
    # int() would also take "+5", "1_0" and non-ASCII digits
    if not (raw.isascii() and raw.isdigit()):
        raise ScheduleSpecError(f"Invalid day or hour: {spec}")
    hour = int(raw)
    if hour not in HOURS:
        raise ScheduleSpecError("Invalid hour, only 0-23 allowed")
    return hour


class ScheduleStore:
    """Thread-safe SQLite access layer for schedule cells and modes.

    SQLite is not safe for concurrent writers, so every public method holds
    the store lock for its whole read-modify-write. Stores may share one lock
    to serialize all schedule access in the process.
    """

    def __init__(self, db_path: Path, lock: Optional[threading.Lock] = None) -> None:
        """Open database connection and ensure schema exists."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=2.0)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = lock or threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schedule_cells (
                    sched TEXT NOT NULL,
                    weekday INTEGER NOT NULL CHECK(weekday BETWEEN 0 AND 6),
                    hour INTEGER NOT NULL CHECK(hour BETWEEN 0 AND 23),
                    PRIMARY KEY (sched, weekday, hour)
                );

                CREATE TABLE IF NOT EXISTS schedule_mode (
                    sched TEXT PRIMARY KEY,
                    mode TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Unlocked helpers; callers hold `self._lock`.

    def _set_cell(self, sched: str, weekday: int, hour: int, active: bool) -> None:
        if active:
            self._conn.execute(
                "INSERT OR REPLACE INTO schedule_cells (sched, weekday, hour) VALUES (?, ?, ?)",
                (sched, weekday, hour),
            )
        else:
            self._conn.execute(
                "DELETE FROM schedule_cells WHERE sched = ? AND weekday = ? AND hour = ?",
                (sched, weekday, hour),
            )
        self._conn.commit()

    def _cell_active(self, sched: str, weekday: int, hour: int) -> bool:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM schedule_cells WHERE sched = ? AND weekday = ? AND hour = ?",
            (sched, weekday, hour),
        ).fetchone()
        return bool(row and row[0])

    def _write_mode(self, sched: str, mode: ScheduleMode) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO schedule_mode (sched, mode) VALUES (?, ?)",
            (sched, mode.label),
        )
        self._conn.commit()

    def _read_mode(self, sched: str) -> ScheduleMode:
        row = self._conn.execute("SELECT mode FROM schedule_mode WHERE sched = ?", (sched,)).fetchone()
        if row is None:
            logger.info("No mode stored for %s, defaulting to %s", sched, ScheduleMode.SCHED.label)
            self._write_mode(sched, ScheduleMode.SCHED)
            return ScheduleMode.SCHED
        return ScheduleMode.from_str(str(row[0]))

    def _apply_spec(self, sched: str, spec: str, active: bool) -> None:
        weekday, hour = parse_sched_spec(spec)
        if hour is None:
            for h in HOURS:
                self._set_cell(sched, weekday, h, active)
        elif weekday is None:
            for day in range(len(DAY_TOKENS)):
                self._set_cell(sched, day, hour, active)
        else:
            self._set_cell(sched, weekday, hour, active)

    # Public API

    def get_mode(self, sched: str = UPLOAD_SCHED) -> ScheduleMode:
        """Return the stored mode, persisting `SCHED` the first time none exists."""
        with self._lock:
            return self._read_mode(sched)

    def set_mode(self, sched: str, mode: ScheduleMode) -> None:
        if mode is ScheduleMode.INVALID:
            raise ValueError("cannot store an invalid schedule mode")
        with self._lock:
            self._write_mode(sched, mode)

    def is_active_now(self, sched: str = UPLOAD_SCHED, now: Optional[datetime] = None) -> bool:
        """Resolve the mode; `SCHED` looks up the cell for the current weekday and hour."""
        with self._lock:
            mode = self._read_mode(sched)
            if mode is ScheduleMode.ON:
                return True
            if mode is ScheduleMode.OFF:
                return False
            now = now or datetime.now()
            return self._cell_active(sched, now.weekday(), now.hour)

    def is_active_at(self, sched: str, weekday: int, hour: int) -> bool:
        with self._lock:
            return self._cell_active(sched, weekday, hour)

    def activate(self, sched: str, spec: str) -> None:
        """Mark the cells named by `spec` active.

        Day-wide and hour-wide specs write cell by cell without a transaction;
        a storage error part way leaves the earlier cells applied.
        """
        with self._lock:
            self._apply_spec(sched, spec, True)

    def deactivate(self, sched: str, spec: str) -> None:
        with self._lock:
            self._apply_spec(sched, spec, False)

    def activate_all(self, sched: str = UPLOAD_SCHED) -> None:
        with self._lock:
            for day in range(len(DAY_TOKENS)):
                for hour in HOURS:
                    self._set_cell(sched, day, hour, True)

    def deactivate_all(self, sched: str = UPLOAD_SCHED) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM schedule_cells WHERE sched = ?", (sched,))
            self._conn.commit()

    def get_table(self, sched: str = UPLOAD_SCHED) -> Tuple[List[str], List[List[str]]]:
        """Return `(header, rows)`: one row per hour, one `x` per active day."""
        header = ["Hour"] + [day.title() for day in DAY_TOKENS]
        with self._lock:
            active = {
                (int(weekday), int(hour))
                for weekday, hour in self._conn.execute(
                    "SELECT weekday, hour FROM schedule_cells WHERE sched = ?", (sched,)
                ).fetchall()
            }
        rows = []
        for hour in HOURS:
            row = [f"{hour:02d}:00"]
            row.extend("x" if (day, hour) in active else "" for day in range(len(DAY_TOKENS)))
            rows.append(row)
        return header, rows

    def table_jpeg(self, sched: str = UPLOAD_SCHED) -> bytes:
        header, rows = self.get_table(sched)
        return render.table_jpeg(header, rows)

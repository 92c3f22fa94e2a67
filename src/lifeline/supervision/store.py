"""
Durable state for the restart detectors.

Two named ledgers of RestartRecords ("crash_loop" and "daily") and the
emergency stop flag. JsonFileStore keeps each of them as a JSON document in
the state directory, written atomically (temp file, then rename).
InMemoryStore backs tests and dry runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import psutil

from ..core.exceptions import StoreError

logger = logging.getLogger(__name__)

CRASH_LOOP_LEDGER = "crash_loop"
DAILY_LEDGER = "daily"

LEDGER_FILES = {
    CRASH_LOOP_LEDGER: "crash_loop_history.json",
    DAILY_LEDGER: "restart_log.json",
}
FLAG_FILE = "emergency_stop.flag"


def current_heap_mb() -> float:
    """Resident memory of this process in megabytes."""
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except psutil.Error as e:
        logger.debug(f"Could not read process memory: {e}")
        return 0.0


@dataclass
class RestartRecord:
    """One process start."""

    timestamp: float  # epoch seconds
    reason: str = "unknown"
    pid: int = 0
    heap_used_mb: float = 0.0

    @classmethod
    def capture(cls, reason: str, now: float | None = None) -> "RestartRecord":
        """Record for the current process."""
        return cls(
            timestamp=time.time() if now is None else now,
            reason=reason,
            pid=os.getpid(),
            heap_used_mb=round(current_heap_mb(), 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "reason": self.reason,
            "pid": self.pid,
            "heap_used_mb": self.heap_used_mb,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RestartRecord":
        return cls(
            timestamp=float(data["timestamp"]),
            reason=str(data.get("reason", "unknown")),
            pid=int(data.get("pid", 0)),
            heap_used_mb=float(data.get("heap_used_mb", data.get("memory", 0.0)) or 0.0),
        )


@dataclass
class EmergencyStopFlag:
    """Marker that refuses startup until it expires or is removed."""

    timestamp: float
    reason: str
    restart_history: list[RestartRecord] = field(default_factory=list)

    def age(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.timestamp)

    def is_fresh(self, max_age: float, now: float | None = None) -> bool:
        return self.age(now) < max_age

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "reason": self.reason,
            "restart_history": [r.to_dict() for r in self.restart_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmergencyStopFlag":
        history = data.get("restart_history", data.get("restartHistory", [])) or []
        return cls(
            timestamp=float(data["timestamp"]),
            reason=str(data.get("reason", "unknown")),
            restart_history=[RestartRecord.from_dict(r) for r in history],
        )


class DurableStore(Protocol):
    """Abstract storage backend for restart ledgers and the emergency flag."""

    async def load_ledger(self, name: str) -> list[RestartRecord]: ...
    async def save_ledger(self, name: str, records: list[RestartRecord]) -> None: ...
    async def load_flag(self) -> EmergencyStopFlag | None: ...
    async def save_flag(self, flag: EmergencyStopFlag) -> None: ...
    async def delete_flag(self) -> bool: ...


class InMemoryStore:
    """Simple in-memory implementation of :class:`DurableStore`."""

    def __init__(self) -> None:
        self.ledgers: dict[str, list[RestartRecord]] = {}
        self.flag: EmergencyStopFlag | None = None

    async def load_ledger(self, name: str) -> list[RestartRecord]:
        return list(self.ledgers.get(name, []))

    async def save_ledger(self, name: str, records: list[RestartRecord]) -> None:
        self.ledgers[name] = list(records)

    async def load_flag(self) -> EmergencyStopFlag | None:
        return self.flag

    async def save_flag(self, flag: EmergencyStopFlag) -> None:
        self.flag = flag

    async def delete_flag(self) -> bool:
        existed = self.flag is not None
        self.flag = None
        return existed


class JsonFileStore:
    """JSON documents in a state directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def ledger_path(self, name: str) -> Path:
        try:
            return self.directory / LEDGER_FILES[name]
        except KeyError:
            raise StoreError(f"Unknown ledger: {name}") from None

    @property
    def flag_path(self) -> Path:
        return self.directory / FLAG_FILE

    async def load_ledger(self, name: str) -> list[RestartRecord]:
        return await asyncio.to_thread(self._load_ledger_sync, name)

    async def save_ledger(self, name: str, records: list[RestartRecord]) -> None:
        await asyncio.to_thread(
            self._write_json, self.ledger_path(name), [r.to_dict() for r in records]
        )

    async def load_flag(self) -> EmergencyStopFlag | None:
        return await asyncio.to_thread(self._load_flag_sync)

    async def save_flag(self, flag: EmergencyStopFlag) -> None:
        await asyncio.to_thread(self._write_json, self.flag_path, flag.to_dict())

    async def delete_flag(self) -> bool:
        return await asyncio.to_thread(self._delete_flag_sync)

    # -------------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # -------------------------------------------------------------------------

    def _load_ledger_sync(self, name: str) -> list[RestartRecord]:
        path = self.ledger_path(name)
        if not path.exists():
            return []
        data = self._read_json(path)
        if not isinstance(data, list):
            logger.warning(f"Ignoring malformed ledger {path}")
            return []
        records = []
        for entry in data:
            try:
                records.append(RestartRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed restart record in {path}: {e}")
        return records

    def _load_flag_sync(self) -> EmergencyStopFlag | None:
        if not self.flag_path.exists():
            return None
        data = self._read_json(self.flag_path)
        try:
            return EmergencyStopFlag.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed emergency stop flag: {e}", str(self.flag_path)) from e

    def _delete_flag_sync(self) -> bool:
        try:
            self.flag_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to delete emergency stop flag: {e}", str(self.flag_path)) from e
        return True

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {path.name}: {e}", str(path)) from e

    def _write_json(self, path: Path, data: Any) -> None:
        temp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(data, indent=2))
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StoreError(f"Failed to save {path.name}: {e}", str(path)) from e

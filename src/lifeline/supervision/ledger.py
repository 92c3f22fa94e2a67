"""
Restart Ledger - time-stamped restart history with a retention horizon.

The ledger keeps an in-memory mirror of the durable document. Store calls
are bounded by a timeout; when the store is slow or broken the failure is
logged and the mirror keeps working, so a restart is always counted for the
lifetime of the process. The mirror is never saved over a durable ledger
that has not been read: every write retries the load and merges first.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..core.exceptions import StoreError
from .store import DurableStore, RestartRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded_store_call(
    operation: Awaitable[T],
    timeout: float,
    description: str,
) -> Optional[T]:
    """Await a store operation, logging and swallowing failures and timeouts."""
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Store timed out after {timeout}s while trying to {description}")
    except (StoreError, OSError) as e:
        logger.warning(f"Store failed to {description}: {e}")
    return None


class RestartLedger:
    """
    Ordered restart records for one named ledger.

    Pruning removes only entries older than the retention horizon, is
    idempotent, and never removes the most recent entry.
    """

    def __init__(
        self,
        store: DurableStore,
        name: str,
        retention_seconds: float,
        store_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.name = name
        self.retention_seconds = retention_seconds
        self.store_timeout = store_timeout
        self._clock = clock
        self._records: list[RestartRecord] = []
        self._loaded = False

    @property
    def records(self) -> list[RestartRecord]:
        return list(self._records)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._records)

    async def load(self) -> list[RestartRecord]:
        """Read the durable ledger into the mirror and prune it."""
        stored = await bounded_store_call(
            self.store.load_ledger(self.name),
            self.store_timeout,
            f"load the {self.name} ledger",
        )
        if stored is not None:
            known = {(r.timestamp, r.pid) for r in stored}
            # Records made before a failed load stay in the mirror
            stored.extend(r for r in self._records if (r.timestamp, r.pid) not in known)
            self._records = sorted(stored, key=lambda r: r.timestamp)
            self._loaded = True
        self.prune()
        return self.records

    async def record(self, record: RestartRecord) -> RestartRecord:
        """Append a record, prune, and persist."""
        if not self._loaded:
            await self.load()
        self._records.append(record)
        self._records.sort(key=lambda r: r.timestamp)
        self.prune(record.timestamp)
        await self.persist()
        return record

    async def record_restart(self, reason: str, now: Optional[float] = None) -> RestartRecord:
        """Capture and record a restart of the current process."""
        return await self.record(RestartRecord.capture(reason, self._clock() if now is None else now))

    async def persist(self) -> None:
        """Save the mirror, unless the durable ledger could not be read."""
        if not self._loaded:
            logger.warning(f"Not saving the {self.name} ledger: stored history was not read")
            return
        await bounded_store_call(
            self.store.save_ledger(self.name, self.records),
            self.store_timeout,
            f"save the {self.name} ledger",
        )

    async def clear(self) -> None:
        """Drop every record."""
        self._records = []
        self._loaded = True
        await self.persist()

    def prune(self, now: Optional[float] = None) -> int:
        """
        Remove records older than the retention horizon.

        Returns:
            Number of records removed
        """
        if not self._records:
            return 0
        now = self._clock() if now is None else now
        horizon = now - self.retention_seconds
        latest = max(self._records, key=lambda r: r.timestamp)
        kept = [r for r in self._records if r.timestamp > horizon or r is latest]
        removed = len(self._records) - len(kept)
        if removed:
            logger.debug(f"Pruned {removed} records from the {self.name} ledger")
        self._records = kept
        return removed

    def in_window(self, window_seconds: float, now: Optional[float] = None) -> list[RestartRecord]:
        """Records at or after ``now - window_seconds``."""
        now = self._clock() if now is None else now
        window_start = now - window_seconds
        return [r for r in self._records if r.timestamp >= window_start]

    def count_in_window(self, window_seconds: float, now: Optional[float] = None) -> int:
        return len(self.in_window(window_seconds, now))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "retention_seconds": self.retention_seconds,
            "records": [r.to_dict() for r in self._records],
        }

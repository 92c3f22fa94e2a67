"""
Single-instance lock.

Two processes sharing one set of credentials knock each other off the
server (the session-conflict close). The lock file records who holds it;
a lock whose heartbeat is older than the stale age is taken over.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from ..core.exceptions import InstanceLockedError, StoreError

logger = logging.getLogger(__name__)

LOCK_FILE = "instance.lock"
STALE_AFTER_SECONDS = 120.0


class InstanceLock:
    """JSON lock file owned by exactly one live process."""

    def __init__(
        self,
        path: Path | str,
        stale_after: float = STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.stale_after = stale_after
        self._clock = clock
        self.instance_id = f"{int(clock() * 1000)}-{uuid.uuid4().hex[:9]}"
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _lock_data(self) -> dict[str, Any]:
        return {
            "timestamp": self._clock(),
            "pid": os.getpid(),
            "instance_id": self.instance_id,
            "host": socket.gethostname(),
        }

    def read(self) -> Optional[dict[str, Any]]:
        """Current lock contents, or None if there is no readable lock."""
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable lock file {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            InstanceLockedError: If another instance holds a live lock
        """
        current = self.read()
        if current is not None and current.get("instance_id") != self.instance_id:
            age = self._clock() - float(current.get("timestamp", 0))
            if age <= self.stale_after:
                logger.error(
                    f"Another instance is already running (pid {current.get('pid')}, "
                    f"instance {current.get('instance_id')}, host {current.get('host')}). "
                    f"To force start, delete {self.path}"
                )
                raise InstanceLockedError(str(self.path), current)
            logger.info(f"Removing stale lock file ({age:.0f}s old)")

        self._write()
        self._held = True
        logger.info(f"Instance locked (ID: {self.instance_id})")

    def refresh(self) -> None:
        """Renew the lock timestamp while the process is alive."""
        if self._held:
            self._write()

    def release(self) -> bool:
        """Remove the lock if this instance owns it."""
        if not self._held:
            return False
        self._held = False
        current = self.read()
        if current is None or current.get("instance_id") != self.instance_id:
            logger.warning("Instance lock was taken over by another process; leaving it")
            return False
        self.path.unlink(missing_ok=True)
        logger.info("Instance lock released")
        return True

    def _write(self) -> None:
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(self._lock_data(), indent=2))
            temp_path.replace(self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StoreError(f"Failed to write lock file: {e}", str(self.path)) from e

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()

"""
Credential persistence for the protocol client.

Credentials live in a single JSON document inside a dedicated directory.
Wiping removes the whole directory so the next connection starts a fresh
pairing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any

from ..core.exceptions import StoreError

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "creds.json"


class FileCredentialStore:
    """JSON credential file in a directory owned by this process."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    @property
    def path(self) -> Path:
        return self.directory / CREDENTIALS_FILE

    def exists(self) -> bool:
        return self.path.exists()

    async def load(self) -> dict[str, Any] | None:
        """Load saved credentials, or None when there are none."""
        return await asyncio.to_thread(self._load_sync)

    async def save(self, credentials: dict[str, Any]) -> None:
        """Persist credentials atomically."""
        await asyncio.to_thread(self._save_sync, credentials)

    async def wipe(self) -> bool:
        """Remove the credential directory. Returns True if anything was removed."""
        return await asyncio.to_thread(self._wipe_sync)

    def _load_sync(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read credentials from {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _save_sync(self, credentials: dict[str, Any]) -> None:
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(credentials))
            temp_path.replace(self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StoreError(f"Failed to save credentials: {e}", str(self.path)) from e

    def _wipe_sync(self) -> bool:
        if not self.directory.exists():
            return False
        shutil.rmtree(self.directory)
        logger.warning(f"Wiped credential directory {self.directory}")
        return True

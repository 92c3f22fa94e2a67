"""
Session Error Tracker - per-peer decryption failure bookkeeping.

Decryption failures are local to one counterpart and never escalate to a
connection-level action. During the startup window a single failure puts
the peer on the skip list, because a backlog of undecryptable messages can
stall the whole client right after it connects. Outside startup a peer is
only flagged after repeated failures.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

PRIVACY_ID_SUFFIX = "@lid"


def is_privacy_identifier(peer_id: Optional[str]) -> bool:
    """True for the protocol's opaque privacy identifiers."""
    return bool(peer_id) and peer_id.endswith(PRIVACY_ID_SUFFIX)


@dataclass
class SessionTrackerConfig:
    """Configuration for SessionErrorTracker."""

    startup_threshold: int = 1
    error_threshold: int = 3
    max_message_retries: int = 2
    retention_seconds: float = 3600.0
    block_privacy_ids_during_startup: bool = True


class SessionErrorTracker:
    """Tracks session errors per peer and the startup skip set."""

    def __init__(
        self,
        config: Optional[SessionTrackerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SessionTrackerConfig()
        self._clock = clock
        self._errors: Dict[str, List[float]] = {}
        self._problematic: Set[str] = set()
        # (message_id, peer_id) -> (attempts, last attempt time)
        self._retries: Dict[Tuple[str, str], Tuple[int, float]] = {}

    @property
    def problematic_peers(self) -> Set[str]:
        return set(self._problematic)

    def error_count(self, peer_id: str) -> int:
        return len(self._errors.get(peer_id, []))

    def track_error(self, peer_id: str, during_startup: bool = False, now: Optional[float] = None) -> bool:
        """
        Record a session error for a peer.

        Returns:
            True if the peer has reached the threshold for the current mode
        """
        now = self._clock() if now is None else now
        errors = self._errors.setdefault(peer_id, [])
        errors.append(now)

        threshold = self.config.startup_threshold if during_startup else self.config.error_threshold
        if len(errors) < threshold:
            return False

        if during_startup:
            self._problematic.add(peer_id)
            logger.warning(
                f"Peer {peer_id} has {len(errors)} session errors - marking as problematic for startup"
            )
        else:
            logger.warning(f"Peer {peer_id} has {len(errors)} session errors - may need session reset")
        return True

    def should_skip(self, peer_id: Optional[str], during_startup: bool = False) -> bool:
        """Whether messages from this peer should be skipped right now."""
        if not during_startup or not peer_id:
            return False
        if self.config.block_privacy_ids_during_startup and is_privacy_identifier(peer_id):
            logger.debug(f"Skipping privacy identifier during startup: {peer_id[:20]}...")
            return True
        return peer_id in self._problematic

    def clear_problematic_peers(self) -> int:
        """Empty the startup skip set. Returns the number of peers cleared."""
        count = len(self._problematic)
        self._problematic.clear()
        if count:
            logger.info(f"Cleared {count} problematic peers from the startup skip list")
        return count

    def clear_peer(self, peer_id: str) -> None:
        """Forget a peer's errors after one of its messages was processed."""
        self._errors.pop(peer_id, None)
        for key in [k for k in self._retries if k[1] == peer_id]:
            del self._retries[key]

    def should_retry_message(self, message_id: str, peer_id: str, now: Optional[float] = None) -> bool:
        """Consume one retry for a message/peer pair, if any are left."""
        now = self._clock() if now is None else now
        key = (message_id, peer_id)
        attempts, _ = self._retries.get(key, (0, now))
        if attempts >= self.config.max_message_retries:
            return False
        self._retries[key] = (attempts + 1, now)
        return True

    def prune(self, now: Optional[float] = None) -> int:
        """
        Drop error timestamps and retry counters older than the retention.

        Returns:
            Number of peers whose error history was dropped entirely
        """
        now = self._clock() if now is None else now
        horizon = now - self.config.retention_seconds

        dropped = 0
        for peer_id in list(self._errors):
            recent = [t for t in self._errors[peer_id] if t > horizon]
            if recent:
                self._errors[peer_id] = recent
            else:
                del self._errors[peer_id]
                dropped += 1

        for key in [k for k, (_, last) in self._retries.items() if last < horizon]:
            del self._retries[key]

        if dropped:
            logger.debug(f"Pruned session error history for {dropped} peers")
        return dropped

    def get_stats(self) -> Dict[str, Any]:
        """Get tracker statistics."""
        return {
            "peers_with_errors": len(self._errors),
            "total_errors": sum(len(v) for v in self._errors.values()),
            "problematic_peers": len(self._problematic),
            "pending_retries": len(self._retries),
        }

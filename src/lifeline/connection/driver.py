"""
Resilient Connection - runs the protocol client under supervision.

Startup sequence (before the first connect):
1. Instance lock
2. Emergency stop flag check
3. Restart recorded in both ledgers
4. Crash-loop evaluation and daily quota check

Then a single loop consumes connection events one at a time and performs
the actions the state machine returns. The reconnect timer reports back
through the same queue, so every decision is made in arrival order
and at most one reconnect timer is ever outstanding.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Any, Awaitable, Callable, Dict, List, NoReturn, Optional

from ..alerts import OperatorChannel, ProtocolOperatorChannel, WebhookOperatorChannel
from ..core.config import CoreSettings, get_config
from ..core.exceptions import (
    ConnectionFailure,
    CrashLoopDetected,
    ExitCode,
    PeerSessionError,
    StoreError,
    SupervisionFailure,
)
from ..core.logging import bind_connection, new_connection_id
from ..sessions.gate import InboundMessageGate
from ..sessions.startup import StartupConfig, StartupMessageFilter, StartupWindow
from ..sessions.tracker import SessionErrorTracker
from ..supervision.crash_loop import CrashLoopGuard, CrashLoopGuardConfig
from ..supervision.instance_lock import LOCK_FILE, InstanceLock
from ..supervision.restart_limiter import RestartLimiter, RestartLimiterConfig
from ..supervision.store import JsonFileStore
from .backoff import BackoffPolicy
from .credentials import FileCredentialStore
from .protocol import ConnectionEvent, ConnectionEventType, InboundMessage, ProtocolClient
from .state_machine import (
    Action,
    ActionKind,
    ConnectionStateMachine,
    ConnectionStateMachineConfig,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[Any]]


_RECONNECT_DUE = object()
_STOP = object()


class ResilientConnection:
    """
    Supervised protocol connection.

    Example:
        connection = ResilientConnection.from_settings(client, on_message=handle)
        exit_code = await connection.run()
    """

    def __init__(
        self,
        client: ProtocolClient,
        state_machine: Optional[ConnectionStateMachine] = None,
        credentials: Optional[FileCredentialStore] = None,
        crash_guard: Optional[CrashLoopGuard] = None,
        restart_limiter: Optional[RestartLimiter] = None,
        instance_lock: Optional[InstanceLock] = None,
        gate: Optional[InboundMessageGate] = None,
        operator_channel: Optional[OperatorChannel] = None,
        operator_recipient: Optional[str] = None,
        on_message: Optional[MessageHandler] = None,
        enforce_daily_quota: bool = True,
        startup_reason: str = "process start",
        session_prune_interval: float = 3600.0,
        lock_refresh_interval: float = 30.0,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.state_machine = state_machine or ConnectionStateMachine(clock=clock)
        self.credentials = credentials
        self.crash_guard = crash_guard
        self.restart_limiter = restart_limiter
        self.instance_lock = instance_lock
        self.operator_recipient = operator_recipient
        self.operator_channel = operator_channel
        if self.operator_channel is None and operator_recipient:
            self.operator_channel = ProtocolOperatorChannel(client)
        self.on_message = on_message
        self.enforce_daily_quota = enforce_daily_quota
        self.startup_reason = startup_reason
        self.session_prune_interval = session_prune_interval
        self.lock_refresh_interval = lock_refresh_interval
        self._sleep = sleep
        self._clock = clock

        if gate is None:
            tracker = SessionErrorTracker(clock=clock)
            window = StartupWindow(on_close=tracker.clear_problematic_peers, clock=clock)
            gate = InboundMessageGate(
                tracker,
                window,
                StartupMessageFilter(boot_time_ms=clock() * 1000),
                client=client,
                operator_channel=self.operator_channel,
                operator_recipient=operator_recipient,
            )
        self.gate = gate

        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._timer: Optional[asyncio.Task] = None
        self._startup_timer: Optional[asyncio.Task] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self.exit_code: Optional[ExitCode] = None
        self.last_failure: Optional[ConnectionFailure] = None

        self._stats: Dict[str, int] = {
            "events": 0,
            "reconnects_scheduled": 0,
            "credential_wipes": 0,
            "messages_dispatched": 0,
            "handler_errors": 0,
        }

    @classmethod
    def from_settings(
        cls,
        client: ProtocolClient,
        settings: Optional[CoreSettings] = None,
        on_message: Optional[MessageHandler] = None,
        **kwargs: Any,
    ) -> "ResilientConnection":
        """Build a fully wired connection from CoreSettings."""
        settings = settings or get_config()
        clock = kwargs.get("clock", time.time)
        store = JsonFileStore(settings.state_path)
        timeout = settings.store_timeout_seconds

        state_machine = ConnectionStateMachine(
            ConnectionStateMachineConfig(
                max_reconnect_attempts=settings.max_reconnect_attempts,
                max_stream_resets=settings.max_stream_resets,
                credential_wipe_delay_ms=settings.credential_wipe_delay_ms,
                stability_threshold=settings.stability_threshold_seconds,
            ),
            BackoffPolicy(),
            clock=clock,
        )
        crash_guard = CrashLoopGuard(
            store,
            CrashLoopGuardConfig(
                window_seconds=settings.crash_loop_window_seconds,
                alert_threshold=settings.crash_loop_alert_threshold,
                emergency_threshold=settings.crash_loop_emergency_threshold,
                flag_max_age_seconds=settings.emergency_flag_max_age_seconds,
                store_timeout=timeout,
            ),
            clock=clock,
        )
        restart_limiter = RestartLimiter(
            store,
            RestartLimiterConfig(
                max_restarts_per_day=settings.max_restarts_per_day,
                store_timeout=timeout,
            ),
            clock=clock,
        )
        instance_lock = (
            InstanceLock(settings.state_path / LOCK_FILE, clock=clock) if settings.instance_lock_enabled else None
        )

        operator_channel: Optional[OperatorChannel] = None
        if settings.alert_webhook_url:
            operator_channel = WebhookOperatorChannel(
                settings.alert_webhook_url, settings.alert_webhook_timeout_seconds
            )
        elif settings.operator_recipient:
            operator_channel = ProtocolOperatorChannel(client)

        startup = StartupConfig(
            window_seconds=settings.startup_window_seconds,
            grace_period_seconds=settings.message_grace_period_seconds,
        )
        tracker = SessionErrorTracker(clock=clock)
        gate = InboundMessageGate(
            tracker,
            StartupWindow(startup.window_seconds, on_close=tracker.clear_problematic_peers, clock=clock),
            StartupMessageFilter.from_config(startup, boot_time=clock()),
            client=client,
            operator_channel=operator_channel,
            operator_recipient=settings.operator_recipient,
        )

        return cls(
            client,
            state_machine=state_machine,
            credentials=FileCredentialStore(settings.credentials_path),
            crash_guard=crash_guard,
            restart_limiter=restart_limiter,
            instance_lock=instance_lock,
            gate=gate,
            operator_channel=operator_channel,
            operator_recipient=settings.operator_recipient,
            on_message=on_message,
            enforce_daily_quota=settings.enforce_daily_quota,
            **kwargs,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get driver statistics."""
        stats: Dict[str, Any] = {
            **self._stats,
            "state_machine": self.state_machine.get_stats(),
            "gate": self.gate.get_stats(),
        }
        if self.last_failure is not None:
            stats["last_failure"] = self.last_failure.to_dict()
        if self.crash_guard is not None:
            stats["crash_loop"] = self.crash_guard.get_stats()
        if self.restart_limiter is not None:
            stats["daily"] = self.restart_limiter.get_stats()
        return stats

    # -------------------------------------------------------------------------
    # EVENT INTAKE
    # -------------------------------------------------------------------------

    def emit(self, event: ConnectionEvent) -> None:
        """Event sink handed to the protocol client."""
        self._events.put_nowait(event)

    def request_stop(self) -> None:
        """Ask the run loop to shut down cleanly."""
        self._events.put_nowait(_STOP)

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def run(self) -> int:
        """
        Run until the connection reaches a terminal state.

        Returns:
            The process exit code
        """
        self._running = True
        try:
            await self._startup_gate()
            self._start_background_tasks()
            await self._connect()

            while True:
                item = await self._events.get()
                exit_code = await self._process(item)
                if exit_code is not None:
                    self.exit_code = exit_code
                    return int(exit_code)
        except SupervisionFailure as e:
            logger.error(f"{e.message} (exit {int(e.exit_code)})")
            self.exit_code = e.exit_code
            return int(e.exit_code)
        finally:
            self._running = False
            await self._shutdown()

    def run_forever(self) -> NoReturn:
        """Run on a fresh event loop and exit the process with the result."""
        sys.exit(asyncio.run(self.run()))

    async def _startup_gate(self) -> None:
        if self.instance_lock is not None:
            try:
                self.instance_lock.acquire()
            except StoreError as e:
                logger.warning(f"Running without the instance lock: {e.message}")

        if self.crash_guard is not None:
            await self.crash_guard.on_startup(self.startup_reason)

        if self.restart_limiter is not None:
            await self.restart_limiter.record_restart(self.startup_reason)
            if self.restart_limiter.is_restart_limit_exceeded():
                logger.warning(
                    f"Daily restart limit reached "
                    f"({self.restart_limiter.today_count()}/"
                    f"{self.restart_limiter.config.max_restarts_per_day})"
                )
            if self.enforce_daily_quota and self.restart_limiter.should_emergency_stop():
                reason = "daily restart quota exceeded"
                if self.crash_guard is not None:
                    await self.crash_guard.emergency_stop(reason)
                raise CrashLoopDetected(reason, self.restart_limiter.today_count())

    def _start_background_tasks(self) -> None:
        self._tasks.append(asyncio.create_task(self._session_prune_loop()))
        if self.instance_lock is not None:
            self._tasks.append(asyncio.create_task(self._lock_refresh_loop()))

    async def _shutdown(self) -> None:
        for task in [self._timer, self._startup_timer, *self._tasks]:
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._timer = None
        self._startup_timer = None

        try:
            await self.client.disconnect()
        except Exception as e:
            logger.debug(f"Error disconnecting client: {e}")

        if self.instance_lock is not None:
            self.instance_lock.release()

    # -------------------------------------------------------------------------
    # EVENT HANDLING
    # -------------------------------------------------------------------------

    async def _process(self, item: Any) -> Optional[ExitCode]:
        self._stats["events"] += 1

        if item is _STOP:
            logger.info("Stop requested")
            return ExitCode.CLEAN_LOGOUT

        if item is _RECONNECT_DUE:
            self._timer = None
            await self._connect()
            return None

        event: ConnectionEvent = item
        if event.type is ConnectionEventType.CONNECTING:
            logger.debug("Client reports connecting")
        elif event.type is ConnectionEventType.OPEN:
            action = self.state_machine.on_open(self._clock())
            if action.kind is ActionKind.OPENED:
                await self._on_opened()
        elif event.type is ConnectionEventType.CLOSE:
            action = self.state_machine.on_close(event.close, self._clock())
            return await self._perform(action)
        elif event.type is ConnectionEventType.CREDENTIALS_UPDATE:
            await self._save_credentials(event.credentials)
        elif event.type is ConnectionEventType.MESSAGE and event.message is not None:
            await self._dispatch_message(event.message)
        elif event.type is ConnectionEventType.SESSION_ERROR and event.peer_id:
            await self.gate.handle_session_error(event.peer_id, event.message, event.error)
        return None

    async def _perform(self, action: Action) -> Optional[ExitCode]:
        if action.error is not None:
            self.last_failure = action.error
        if action.kind is ActionKind.EXIT:
            return action.exit_code
        if action.kind is ActionKind.WIPE_AND_RECONNECT:
            await self._wipe_credentials()
            self._schedule(action.delay_seconds)
        elif action.kind is ActionKind.RECONNECT:
            self._schedule(action.delay_seconds)
        return None

    def _schedule(self, delay: float) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._stats["reconnects_scheduled"] += 1
        self._timer = asyncio.create_task(self._fire_after(delay))

    async def _fire_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._events.put_nowait(_RECONNECT_DUE)

    async def _connect(self) -> None:
        self.state_machine.begin_connecting()
        bind_connection(new_connection_id(), self.state_machine.attempt.attempt_number + 1)

        credentials = None
        if self.credentials is not None:
            credentials = await self.credentials.load()

        try:
            await self.client.connect(credentials, self.emit)
        except Exception as e:
            logger.warning(f"Connect failed: {e}")
            self.emit(ConnectionEvent.closed(message=str(e)))

    async def _on_opened(self) -> None:
        window = self.gate.window
        if window.start(self._clock()):
            self._startup_timer = asyncio.create_task(self._close_startup_window(window))

        if self.crash_guard is not None:
            await self.crash_guard.send_pending_alert(self.operator_channel, self.operator_recipient)
        if self.restart_limiter is not None:
            await self.restart_limiter.notify_operator(
                self.operator_channel,
                self.operator_recipient,
                reason=self.startup_reason,
            )

    async def _close_startup_window(self, window: StartupWindow) -> None:
        await self._sleep(window.duration)
        window.close()

    async def _dispatch_message(self, message: InboundMessage) -> None:
        if message.from_me or not self.gate.admit(message):
            return
        if self.on_message is None:
            self.gate.message_processed(message)
            return
        try:
            await self.on_message(message)
        except PeerSessionError as e:
            await self.gate.handle_session_error(e.peer_id, message, e.message)
            return
        except Exception as e:
            self._stats["handler_errors"] += 1
            logger.exception(f"Message handler failed for {message.message_id}: {e}")
            return
        self._stats["messages_dispatched"] += 1
        self.gate.message_processed(message)

    async def _save_credentials(self, credentials: Optional[Dict[str, Any]]) -> None:
        if self.credentials is None or credentials is None:
            return
        try:
            await self.credentials.save(credentials)
        except StoreError as e:
            logger.error(f"Failed to persist credentials: {e}")

    async def _wipe_credentials(self) -> None:
        if self.credentials is None:
            return
        try:
            await self.credentials.wipe()
        except OSError as e:
            logger.error(f"Failed to wipe credentials: {e}")
            return
        self._stats["credential_wipes"] += 1

    # -------------------------------------------------------------------------
    # BACKGROUND LOOPS
    # -------------------------------------------------------------------------

    async def _session_prune_loop(self) -> None:
        """Drop session errors older than the tracker's retention."""
        while self._running:
            try:
                await asyncio.sleep(self.session_prune_interval)
                if not self._running:
                    break
                self.gate.tracker.prune(self._clock())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Session prune loop error: {e}")

    async def _lock_refresh_loop(self) -> None:
        """Keep the instance lock from going stale."""
        while self._running:
            try:
                await asyncio.sleep(self.lock_refresh_interval)
                if not self._running:
                    break
                self.instance_lock.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Instance lock refresh error: {e}")

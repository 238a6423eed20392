"""Session controller for one package operation at a time.

The SessionController is the single owner of the Session record. Every
actor that influences the session (presentation commands, the executor's
event stream, the progress ticker, credential requests, aborts and
remedies) communicates with it by posting a message to one inbox. A single
task drains the inbox and applies each message to the session in turn, so
no two handlers ever interleave.

State machine:

    idle -[start]-> running
    running -[line]-> running          (progress and log only)
    running -[success]-> success
    running -[failure]-> error
    running -[update_required]-> update_required
    error -[retry]-> running
    update_required -[escalate]-> running
    running -[cancel, acknowledged]-> idle

Only an explicit terminal event ends a run. Diagnostic lines never change
the status on their own.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from .classifier import classify, classify_launch_error, classify_log, find_remedy
from .config import MonitorConfig
from .errors import CredentialError, ExecutorLaunchError
from .models import (
    AUTOMATED_REMEDIES,
    EventOrigin,
    OperationMode,
    Phase,
    RecoveryActionKind,
    RecoveryAttempt,
    RecoveryStatus,
    Session,
    SessionSnapshot,
    SessionStatus,
)
from .progress import advance_visual, estimate, phase_for_status
from .streaming import LineEvent, TerminalEvent, TerminalOutcome, safe_consume_stream
from .telemetry import TelemetryEvent, TelemetryOutcome

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .credentials import Credential
    from .interfaces import CredentialBroker, ExecutionHandle, OperationExecutor
    from .models import ClassifiedError, PackageTarget
    from .notifications import NotificationManager
    from .recovery import RecoveryCoordinator
    from .streaming import ExecutorEvent
    from .telemetry import TelemetryEmitter

logger = structlog.get_logger(__name__)

STOP_LINES = (
    "STOP: Package not found in current database.",
    "This usually means your system is out of date.",
)

_OUTCOME_STATUS = {
    TerminalOutcome.SUCCESS: SessionStatus.SUCCESS,
    TerminalOutcome.FAILURE: SessionStatus.ERROR,
    TerminalOutcome.UPDATE_REQUIRED: SessionStatus.UPDATE_REQUIRED,
}


# Commands. Each carries a future resolved with whether it was accepted.


@dataclass
class _Request:
    reply: asyncio.Future[bool]


@dataclass
class _Start(_Request):
    target: PackageTarget
    mode: OperationMode


@dataclass
class _Retry(_Request):
    pass


@dataclass
class _Cancel(_Request):
    pass


@dataclass
class _Reset(_Request):
    pass


@dataclass
class _SetMinimized(_Request):
    minimized: bool


@dataclass
class _InvokeRecovery(_Request):
    action: RecoveryActionKind


# Notifications from background tasks


@dataclass
class _CredentialResolved:
    run_id: int
    credential: Credential | None
    error: str | None = None


@dataclass
class _Launched:
    run_id: int
    handle: ExecutionHandle


@dataclass
class _LaunchFailed:
    run_id: int
    error: ExecutorLaunchError


@dataclass
class _Event:
    run_id: int
    event: ExecutorEvent


@dataclass
class _StreamFailed:
    run_id: int
    error: str


@dataclass
class _AbortAcknowledged:
    run_id: int


@dataclass
class _AbortFailed:
    run_id: int
    error: str


@dataclass
class _Tick:
    run_id: int


@dataclass
class _RemedyLine:
    text: str


@dataclass
class _RemedyFinished:
    attempt: RecoveryAttempt


@dataclass
class _Shutdown:
    pass


class SessionController:
    """Owns the single session of a monitor and sequences its runs.

    Use as an async context manager, or call open() and close():

        async with SessionController(executor, recovery=coordinator) as controller:
            await controller.start(PackageTarget(name="firefox"))
            snapshot = await controller.wait_settled()

    Commands return True when accepted and False when rejected; rejection
    never raises and never disturbs the current run.
    """

    def __init__(
        self,
        executor: OperationExecutor,
        *,
        config: MonitorConfig | None = None,
        broker: CredentialBroker | None = None,
        recovery: RecoveryCoordinator | None = None,
        telemetry: TelemetryEmitter | None = None,
        notifier: NotificationManager | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            executor: Performs the privileged operations.
            config: Monitor configuration. Uses defaults if not provided.
            broker: Credential broker, consulted only when the credential
                policy asks for credentials up front.
            recovery: Runs automated remedies. Without one, only plain
                retries are offered.
            telemetry: Receives one outcome event per finished run.
            notifier: Sends a desktop notification per finished run.
        """
        self.config = config or MonitorConfig()
        self._executor = executor
        self._broker = broker
        self._recovery = recovery
        self._telemetry = telemetry
        self._notifier = notifier

        self._session = Session()
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._handle: ExecutionHandle | None = None
        # Run whose event stream is still subscribed
        self._subscribed_run: int | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._credential_task: asyncio.Task[None] | None = None
        self._remedy_task: asyncio.Task[None] | None = None

        self._listeners: list[Callable[[SessionSnapshot], None]] = []
        self._changed = asyncio.Event()

        self._handlers: dict[type, Callable[[Any], bool]] = {
            _Start: self._on_start,
            _Retry: self._on_retry,
            _Cancel: self._on_cancel,
            _Reset: self._on_reset,
            _SetMinimized: self._on_set_minimized,
            _InvokeRecovery: self._on_invoke_recovery,
            _CredentialResolved: self._on_credential_resolved,
            _Launched: self._on_launched,
            _LaunchFailed: self._on_launch_failed,
            _Event: self._on_event,
            _StreamFailed: self._on_stream_failed,
            _AbortAcknowledged: self._on_abort_acknowledged,
            _AbortFailed: self._on_abort_failed,
            _Tick: self._on_tick,
            _RemedyLine: self._on_remedy_line,
            _RemedyFinished: self._on_remedy_finished,
        }

        self._log = logger.bind(component="session_controller")

    # Lifecycle

    @property
    def is_open(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def open(self) -> None:
        """Start processing messages."""
        if self.is_open:
            return
        self._loop_task = asyncio.create_task(self._run(), name="session-controller")
        self._log.debug("controller_opened")

    async def close(self) -> None:
        """Stop processing messages and tear down background work.

        A run still in progress is aborted on a best-effort basis.
        """
        if not self.is_open:
            return

        handle = self._handle
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        if handle is not None and self._session.status == SessionStatus.RUNNING:
            try:
                await self._executor.abort(handle)
            except Exception as e:
                self._log.warning("abort_on_close_failed", error=str(e))

        await self._inbox.put(_Shutdown())
        if self._loop_task is not None:
            await self._loop_task
        self._loop_task = None

        if self._telemetry is not None:
            await self._telemetry.flush()
        self._log.debug("controller_closed")

    async def __aenter__(self) -> SessionController:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # Commands

    async def start(
        self,
        target: PackageTarget,
        mode: OperationMode = OperationMode.INSTALL,
    ) -> bool:
        """Start an operation.

        Rejected while a run or remedy is in progress, and rejected for a
        different package while an error or update_required result is on
        display (call reset() first).
        """
        return await self._submit(lambda reply: _Start(reply=reply, target=target, mode=mode))

    async def retry(self) -> bool:
        """Re-run the last operation. Only permitted after error or update_required."""
        return await self._submit(lambda reply: _Retry(reply=reply))

    async def cancel(self) -> bool:
        """Request cancellation of the running operation.

        The session stays running, with cancellation pending, until the
        executor acknowledges the abort. A terminal event arriving first is
        still applied.
        """
        return await self._submit(lambda reply: _Cancel(reply=reply))

    async def reset(self) -> bool:
        """Dismiss the monitor and return to a pristine idle session."""
        return await self._submit(lambda reply: _Reset(reply=reply))

    async def minimize(self) -> bool:
        return await self._submit(lambda reply: _SetMinimized(reply=reply, minimized=True))

    async def restore(self) -> bool:
        return await self._submit(lambda reply: _SetMinimized(reply=reply, minimized=False))

    async def invoke_recovery(self, action: RecoveryActionKind) -> bool:
        """Run the remedy for a failed session.

        A plain retry is delegated to retry(). Manual recovery cannot be
        invoked. Automated remedies are accepted after an error, and the
        system upgrade escalation after update_required.
        """
        return await self._submit(lambda reply: _InvokeRecovery(reply=reply, action=action))

    async def escalate(self) -> bool:
        """Resolve update_required with a full system upgrade, then resume."""
        return await self.invoke_recovery(RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE)

    async def _submit(self, build: Callable[[asyncio.Future[bool]], _Request]) -> bool:
        if not self.is_open:
            raise RuntimeError("SessionController is not open")
        reply: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        await self._inbox.put(build(reply))
        return await reply

    # Observation

    def snapshot(self) -> SessionSnapshot:
        """Return an immutable view of the session."""
        s = self._session
        classified: ClassifiedError | None = None
        offered: RecoveryActionKind | None = None

        if s.status == SessionStatus.ERROR:
            if s.launch_error is not None:
                classified = classify_launch_error(ExecutorLaunchError(s.launch_error))
            else:
                classified = classify_log(s.log_lines)
                remedy = find_remedy(s.log_lines)
                if remedy is not None:
                    offered = remedy.recovery
        elif s.status == SessionStatus.UPDATE_REQUIRED:
            offered = RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE

        return SessionSnapshot(
            status=s.status,
            target=s.target,
            mode=s.mode,
            log_lines=tuple(s.log_lines),
            visual_progress=s.visual_progress,
            target_progress=s.target_progress,
            phase=s.phase,
            status_text=s.status_text,
            command_preview=s.command_preview,
            classified_error=classified,
            offered_recovery=offered,
            minimized=s.minimized,
            recovering=s.recovering,
            recovery_action=s.recovery.action if s.recovery is not None else None,
            cancel_pending=s.cancel_pending,
            awaiting_credential=s.awaiting_credential,
            run_id=s.run_id,
        )

    def subscribe(self, listener: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every change.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_until(
        self,
        predicate: Callable[[SessionSnapshot], bool],
        timeout: float | None = None,
    ) -> SessionSnapshot:
        """Wait until a snapshot satisfies ``predicate``.

        Raises:
            TimeoutError: If the timeout expires first.
        """
        async with asyncio.timeout(timeout):
            while True:
                changed = self._changed
                snapshot = self.snapshot()
                if predicate(snapshot):
                    return snapshot
                await changed.wait()

    async def wait_settled(self, timeout: float | None = None) -> SessionSnapshot:
        """Wait until no run and no remedy is in progress."""
        return await self.wait_until(lambda snapshot: snapshot.settled, timeout)

    def _publish(self) -> None:
        if self._listeners:
            snapshot = self.snapshot()
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    self._log.exception("listener_failed")

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # Message loop

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if isinstance(message, _Shutdown):
                break

            handler = self._handlers[type(message)]
            try:
                accepted = handler(message)
            except Exception:
                self._log.exception("message_handler_failed", message=type(message).__name__)
                accepted = False

            if isinstance(message, _Request) and not message.reply.done():
                message.reply.set_result(accepted)
            self._publish()

    def _post(self, message: Any) -> None:
        self._inbox.put_nowait(message)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.error(
                "background_task_failed", task=task.get_name(), exc_info=task.exception()
            )

    # Command handlers

    def _on_start(self, message: _Start) -> bool:
        s = self._session
        if s.status == SessionStatus.RUNNING or s.recovering:
            self._log.info("start_rejected", package=message.target.name, reason="busy")
            return False
        if (
            s.status in (SessionStatus.ERROR, SessionStatus.UPDATE_REQUIRED)
            and s.target is not None
            and s.target != message.target
        ):
            self._log.info("start_rejected", package=message.target.name, reason="reset_required")
            return False

        self._begin(message.target, message.mode, reset_log=True)
        return True

    def _on_retry(self, message: _Request | None) -> bool:
        s = self._session
        if s.status not in (SessionStatus.ERROR, SessionStatus.UPDATE_REQUIRED):
            self._log.info("retry_rejected", status=s.status.value)
            return False
        if s.target is None or s.recovering:
            return False

        self._begin(s.target, s.mode, reset_log=True)
        return True

    def _on_cancel(self, message: _Cancel) -> bool:
        s = self._session

        if self._remedy_task is not None:
            self._remedy_task.cancel()
            self._remedy_task = None
            s.recovery = None
            s.append("Recovery cancelled.", EventOrigin.REPAIR, self.config.log_capacity)
            if s.status == SessionStatus.RUNNING:
                s.status = SessionStatus.IDLE
            self._log.info("remedy_cancelled")
            return True

        if s.status != SessionStatus.RUNNING:
            self._log.debug("cancel_ignored", status=s.status.value)
            return False

        if s.awaiting_credential:
            if self._credential_task is not None:
                self._credential_task.cancel()
                self._credential_task = None
            s.awaiting_credential = False
            s.status = SessionStatus.IDLE
            s.status_text = "Cancelled"
            self._log.info("start_cancelled_during_authentication", run_id=s.run_id)
            return True

        if s.cancel_pending:
            return True

        s.cancel_pending = True
        s.status_text = "Cancelling..."
        self._log.info("cancel_requested", run_id=s.run_id)
        if self._handle is not None:
            self._spawn(self._abort(s.run_id, self._handle), "abort")
        return True

    def _on_reset(self, message: _Reset) -> bool:
        s = self._session
        if s.status == SessionStatus.RUNNING or s.recovering:
            self._log.info("reset_rejected", status=s.status.value)
            return False
        s.clear()
        self._subscribed_run = None
        return True

    def _on_set_minimized(self, message: _SetMinimized) -> bool:
        self._session.minimized = message.minimized
        return True

    def _on_invoke_recovery(self, message: _InvokeRecovery) -> bool:
        s = self._session
        action = message.action
        log = self._log.bind(action=action.value)

        if s.recovering or self._remedy_task is not None:
            log.info("recovery_rejected", reason="already_recovering")
            return False
        if action == RecoveryActionKind.RETRY:
            return self._on_retry(None)
        if action not in AUTOMATED_REMEDIES or self._recovery is None or s.target is None:
            log.info("recovery_rejected", reason="not_automated")
            return False

        required = (
            SessionStatus.UPDATE_REQUIRED
            if action == RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE
            else SessionStatus.ERROR
        )
        if s.status != required:
            log.info("recovery_rejected", reason="wrong_status", status=s.status.value)
            return False

        s.auto_retry_fired = False
        s.recovery = RecoveryAttempt(action=action)
        if action == RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE:
            s.status = SessionStatus.RUNNING
            s.events = []
            s.target_progress = 0
            s.visual_progress = 0.0
            s.status_text = "Performing Full System Upgrade..."
            s.phase = phase_for_status(s.status_text)

        self._remedy_task = self._spawn(self._run_remedy(action, self._recovery), "remedy")
        log.info("recovery_started")
        return True

    # Run sequencing

    def _begin(
        self,
        target: PackageTarget,
        mode: OperationMode,
        *,
        reset_log: bool,
        automatic: bool = False,
    ) -> None:
        s = self._session
        self._teardown_run()

        run_id = s.begin_run(target, mode, reset_log=reset_log)
        s.recovery = None
        if not automatic:
            s.auto_retry_fired = False
        s.command_preview = self._executor.command_preview(target, mode)
        verb = "installation" if mode == OperationMode.INSTALL else "removal"
        s.status_text = f"Preparing {verb} of {target.name}..."
        s.phase = phase_for_status(s.status_text)

        self._log.info(
            "run_started",
            package=target.name,
            mode=mode.value,
            run_id=run_id,
            automatic=automatic,
        )

        if self._broker is not None and self.config.credentials.reduce_password_prompts:
            s.awaiting_credential = True
            self._credential_task = self._spawn(
                self._request_credential(run_id, self._broker), "credential"
            )
        else:
            self._spawn(self._launch(run_id, target, mode, None), "launch")

    def _teardown_run(self, *, cancel_pump: bool = True) -> None:
        """Drop the subscription and ticker of the current run."""
        self._subscribed_run = None
        self._handle = None
        if cancel_pump and self._pump_task is not None:
            self._pump_task.cancel()
        if self._ticker_task is not None:
            self._ticker_task.cancel()
        self._pump_task = None
        self._ticker_task = None

    async def _request_credential(self, run_id: int, broker: CredentialBroker) -> None:
        try:
            credential = await broker.request_credential()
        except CredentialError as e:
            self._post(_CredentialResolved(run_id=run_id, credential=None, error=str(e)))
            return
        self._post(_CredentialResolved(run_id=run_id, credential=credential))

    def _on_credential_resolved(self, message: _CredentialResolved) -> bool:
        s = self._session
        self._credential_task = None
        if message.run_id != s.run_id or not s.awaiting_credential:
            return False

        s.awaiting_credential = False
        if message.credential is None:
            text = (
                f"Authentication failed: {message.error}"
                if message.error
                else "Authentication cancelled."
            )
            s.append(text, capacity=self.config.log_capacity)
            s.status = SessionStatus.IDLE
            s.status_text = "Cancelled"
            self._log.info("start_aborted_no_credential", run_id=s.run_id, error=message.error)
            return True

        if s.target is None:
            return False
        self._spawn(self._launch(s.run_id, s.target, s.mode, message.credential), "launch")
        return True

    async def _launch(
        self,
        run_id: int,
        target: PackageTarget,
        mode: OperationMode,
        credential: Credential | None,
    ) -> None:
        try:
            handle = await self._executor.launch(target, mode, credential)
        except ExecutorLaunchError as e:
            self._post(_LaunchFailed(run_id=run_id, error=e))
            return
        except Exception as e:
            self._log.exception("executor_launch_crashed")
            self._post(_LaunchFailed(run_id=run_id, error=ExecutorLaunchError(str(e))))
            return
        self._post(_Launched(run_id=run_id, handle=handle))

    def _on_launched(self, message: _Launched) -> bool:
        s = self._session
        if message.run_id != s.run_id or s.status != SessionStatus.RUNNING:
            # Superseded while launching; stop the orphan
            self._spawn(self._abort(message.run_id, message.handle), "abort-orphan")
            return False

        self._handle = message.handle
        self._subscribed_run = message.run_id
        self._pump_task = self._spawn(self._pump(message.run_id, message.handle), "event-pump")
        self._ticker_task = self._spawn(self._tick(message.run_id), "progress-ticker")
        self._log.debug("run_subscribed", run_id=message.run_id, handle=message.handle.description)

        if s.cancel_pending:
            self._spawn(self._abort(message.run_id, message.handle), "abort")
        return True

    def _on_launch_failed(self, message: _LaunchFailed) -> bool:
        s = self._session
        if message.run_id != s.run_id or s.status != SessionStatus.RUNNING:
            return False

        s.status = SessionStatus.ERROR
        s.cancel_pending = False
        s.launch_error = str(message.error)
        s.status_text = "Failed to start"
        s.append(f"Error launching: {message.error}", capacity=self.config.log_capacity)
        self._log.error("executor_launch_failed", run_id=s.run_id, error=str(message.error))
        self._report(TelemetryOutcome.LAUNCH_FAILED)
        return True

    async def _pump(self, run_id: int, handle: ExecutionHandle) -> None:
        try:
            async for event in safe_consume_stream(handle.events()):
                self._post(_Event(run_id=run_id, event=event))
                if isinstance(event, TerminalEvent):
                    break
            else:
                self._log.warning("event_stream_ended_early", run_id=run_id)
                self._post(
                    _StreamFailed(run_id=run_id, error="event stream ended without a result")
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.exception("event_stream_failed", run_id=run_id)
            self._post(_StreamFailed(run_id=run_id, error=str(e)))

    async def _tick(self, run_id: int) -> None:
        interval = self.config.progress.tick_interval
        while True:
            await asyncio.sleep(interval)
            self._post(_Tick(run_id=run_id))

    async def _abort(self, run_id: int, handle: ExecutionHandle) -> None:
        try:
            await self._executor.abort(handle)
        except Exception as e:
            self._log.warning("abort_failed", run_id=run_id, error=str(e))
            self._post(_AbortFailed(run_id=run_id, error=str(e)))
            return
        self._post(_AbortAcknowledged(run_id=run_id))

    # Run events

    def _on_event(self, message: _Event) -> bool:
        s = self._session
        if message.run_id != s.run_id or self._subscribed_run != message.run_id:
            return False

        event = message.event
        if isinstance(event, LineEvent):
            self._apply_line(event)
        elif isinstance(event, TerminalEvent):
            self._apply_terminal(event.outcome)
        return True

    def _apply_line(self, event: LineEvent) -> None:
        s = self._session
        s.append(event.text, event.origin, self.config.log_capacity)
        update = estimate(event.text, s.target_progress)
        s.target_progress = update.target
        if update.status_text is not None:
            s.status_text = update.status_text
        if update.phase is not None:
            s.phase = update.phase

    def _apply_terminal(self, outcome: TerminalOutcome) -> None:
        s = self._session
        # The pump stops by itself after delivering the terminal event
        self._teardown_run(cancel_pump=False)
        s.cancel_pending = False
        s.status = _OUTCOME_STATUS[outcome]

        if outcome == TerminalOutcome.SUCCESS:
            s.target_progress = 100
            s.visual_progress = 100.0
            s.phase = Phase.FINALIZING
            s.status_text = (
                "Installation Complete"
                if s.mode == OperationMode.INSTALL
                else "Removal Complete"
            )
            self._report(TelemetryOutcome.SUCCESS)
        elif outcome == TerminalOutcome.UPDATE_REQUIRED:
            for text in STOP_LINES:
                s.append(text, capacity=self.config.log_capacity)
            s.status_text = "System update required"
            self._report(TelemetryOutcome.UPDATE_REQUIRED)
        else:
            s.status_text = "Failed"
            self._report(TelemetryOutcome.FAILURE)

        self._log.info("run_finished", run_id=s.run_id, outcome=outcome.value)

    def _on_stream_failed(self, message: _StreamFailed) -> bool:
        s = self._session
        if message.run_id != s.run_id or self._subscribed_run != message.run_id:
            return False
        s.append(
            f"Lost connection to the operation: {message.error}",
            capacity=self.config.log_capacity,
        )
        self._apply_terminal(TerminalOutcome.FAILURE)
        return True

    def _on_abort_acknowledged(self, message: _AbortAcknowledged) -> bool:
        s = self._session
        if (
            message.run_id != s.run_id
            or s.status != SessionStatus.RUNNING
            or not s.cancel_pending
        ):
            # The run already ended with a terminal event
            return False

        self._teardown_run()
        s.cancel_pending = False
        s.status = SessionStatus.IDLE
        s.status_text = "Cancelled"
        s.append("Operation cancelled.", capacity=self.config.log_capacity)
        self._log.info("run_cancelled", run_id=s.run_id)
        self._report(TelemetryOutcome.CANCELLED)
        return True

    def _on_abort_failed(self, message: _AbortFailed) -> bool:
        s = self._session
        if message.run_id != s.run_id or not s.cancel_pending:
            return False
        s.cancel_pending = False
        s.append(f"Could not cancel: {message.error}", capacity=self.config.log_capacity)
        return True

    def _on_tick(self, message: _Tick) -> bool:
        s = self._session
        if message.run_id != s.run_id or s.status != SessionStatus.RUNNING:
            return False
        s.visual_progress = advance_visual(
            s.visual_progress, s.target_progress, self.config.progress
        )
        return True

    # Remedies

    async def _run_remedy(
        self, action: RecoveryActionKind, recovery: RecoveryCoordinator
    ) -> None:
        try:
            attempt = await recovery.execute(
                action, lambda text: self._post(_RemedyLine(text=text))
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.exception("remedy_crashed", action=action.value)
            self._post(_RemedyLine(text=f"Recovery failed: {e}"))
            attempt = RecoveryAttempt(
                action=action, status=RecoveryStatus.FAILED, error=classify(str(e))
            )
        self._post(_RemedyFinished(attempt=attempt))

    def _on_remedy_line(self, message: _RemedyLine) -> bool:
        s = self._session
        if s.recovery is None:
            return False
        s.recovery.log.append(message.text)
        s.append(message.text, EventOrigin.REPAIR, self.config.log_capacity)
        return True

    def _on_remedy_finished(self, message: _RemedyFinished) -> bool:
        s = self._session
        self._remedy_task = None
        if s.recovery is None:
            return False

        attempt = message.attempt
        s.recovery = None

        if attempt.status == RecoveryStatus.SUCCESS and attempt.auto_retry:
            if s.auto_retry_fired or s.target is None:
                return False
            s.auto_retry_fired = True
            resume = attempt.action == RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE
            self._log.info("auto_retry", action=attempt.action.value, resume=resume)
            self._begin(s.target, s.mode, reset_log=not resume, automatic=True)
            return True

        if s.status == SessionStatus.RUNNING:
            s.status = SessionStatus.ERROR
        s.status_text = "Recovery failed"
        self._log.warning(
            "remedy_unsuccessful",
            action=attempt.action.value,
            kind=attempt.error.kind.value if attempt.error else None,
        )
        return True

    # Reporting

    def _report(self, outcome: TelemetryOutcome) -> None:
        s = self._session
        if s.target is None:
            return

        if self._telemetry is not None:
            self._telemetry.emit(
                TelemetryEvent(package=s.target.name, mode=s.mode, outcome=outcome)
            )

        if self._notifier is not None and outcome != TelemetryOutcome.CANCELLED:
            self._spawn(
                asyncio.to_thread(self._notifier.notify_outcome, s.target, s.mode, s.status),
                "notify",
            )

"""Drives one session from the terminal.

The runner starts the operation, waits for it to settle, and when it fails
offers the remedy the session suggests. Every remedy is offered at most
once per invocation, so an unattended run (``--yes``) cannot loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING

import structlog

from monitor.models import RecoveryActionKind, SessionStatus

from .display import RECOVERY_LABELS

if TYPE_CHECKING:
    from collections.abc import Callable

    from monitor.models import OperationMode, PackageTarget
    from monitor.session import SessionController

    from .display import SessionDisplay

logger = structlog.get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_UPDATE_REQUIRED = 2
EXIT_CANCELLED = 130


async def run_operation(
    controller: SessionController,
    target: PackageTarget,
    mode: OperationMode,
    display: SessionDisplay,
    *,
    assume_yes: bool = False,
    confirm: Callable[[str], bool] | None = None,
) -> int:
    """Run an operation to completion, offering remedies on failure.

    Args:
        controller: An open session controller.
        target: Package to operate on.
        mode: Install or uninstall.
        display: Live display receiving every snapshot.
        assume_yes: Accept offered remedies without asking.
        confirm: Asks the user a yes/no question.

    Returns:
        Process exit code.
    """
    log = logger.bind(component="cli_runner", package=target.name)
    attempted: set[RecoveryActionKind] = set()
    unsubscribe = controller.subscribe(display.update)
    loop = asyncio.get_running_loop()
    cancel_tasks: set[asyncio.Task[bool]] = set()

    def request_cancel() -> None:
        task = loop.create_task(controller.cancel())
        cancel_tasks.add(task)
        task.add_done_callback(cancel_tasks.discard)

    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, request_cancel)

    display.start()
    try:
        if not await controller.start(target, mode):
            log.error("start_rejected")
            return EXIT_ERROR

        while True:
            snapshot = await controller.wait_settled()
            display.update(snapshot)

            if snapshot.status == SessionStatus.SUCCESS:
                return EXIT_SUCCESS
            if snapshot.status == SessionStatus.IDLE:
                return EXIT_CANCELLED

            if snapshot.status == SessionStatus.UPDATE_REQUIRED:
                display.show_update_required(snapshot)
                action: RecoveryActionKind | None = RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE
                failure_code = EXIT_UPDATE_REQUIRED
            else:
                display.show_error(snapshot)
                action = snapshot.offered_recovery
                failure_code = EXIT_ERROR

            if action is None or action == RecoveryActionKind.MANUAL or action in attempted:
                return failure_code

            question = f"{RECOVERY_LABELS[action]}?"
            with display.suspended():
                accepted = assume_yes or (confirm is not None and confirm(question))
            if not accepted:
                return failure_code

            attempted.add(action)
            log.info("remedy_accepted", action=action.value)
            if not await controller.invoke_recovery(action):
                return failure_code
    finally:
        display.stop()
        unsubscribe()
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)

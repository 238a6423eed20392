"""Core data models for the install monitor.

This module defines the session record owned by the session controller,
the immutable snapshot handed to presentation layers, and the Pydantic
models describing package targets and classified failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Status of the monitored session."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    UPDATE_REQUIRED = "update_required"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.SUCCESS, SessionStatus.ERROR, SessionStatus.UPDATE_REQUIRED}
)


class OperationMode(str, Enum):
    """Kind of package operation."""

    INSTALL = "install"
    UNINSTALL = "uninstall"


class Phase(str, Enum):
    """Coarse displayed stage of a run."""

    SAFETY = "Safety"
    DOWNLOADING = "Downloading"
    INSTALLING = "Installing"
    FINALIZING = "Finalizing"


PHASE_ORDER = (Phase.SAFETY, Phase.DOWNLOADING, Phase.INSTALLING, Phase.FINALIZING)


class SourceType(str, Enum):
    """Where a package comes from."""

    REPO = "repo"
    AUR = "aur"
    FLATPAK = "flatpak"


class EventOrigin(str, Enum):
    """Which channel produced a diagnostic line."""

    PRIMARY = "primary"
    REPAIR = "repair"


class ErrorKind(str, Enum):
    """Closed taxonomy of classified failures."""

    DATABASE_LOCKED = "DatabaseLocked"
    TRUST_STORE_INVALID = "TrustStoreInvalid"
    PACKAGE_NOT_FOUND = "PackageNotFound"
    NETWORK_FAILURE = "NetworkFailure"
    DISK_FULL = "DiskFull"
    DEPENDENCY_CONFLICT = "DependencyConflict"
    FILE_CONFLICT = "FileConflict"
    CORRUPT_DOWNLOAD = "CorruptDownload"
    PERMISSION_DENIED = "PermissionDenied"
    BUILD_TOOLCHAIN_MISSING = "BuildToolchainMissing"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    MALFORMED_RESPONSE = "MalformedResponse"
    UNCLASSIFIED = "Unclassified"


class RecoveryActionKind(str, Enum):
    """Recovery offered for a classified failure."""

    UNLOCK_RESOURCE = "unlockResource"
    REPAIR_TRUST_STORE = "repairTrustStore"
    REFRESH_AND_RETRY = "refreshAndRetry"
    CLEAN_CACHE = "cleanCache"
    ESCALATE_SYSTEM_UPGRADE = "escalateSystemUpgrade"
    RETRY = "retry"
    MANUAL = "manual"


# Actions backed by a privileged call in the recovery coordinator
AUTOMATED_REMEDIES = frozenset(
    {
        RecoveryActionKind.UNLOCK_RESOURCE,
        RecoveryActionKind.REPAIR_TRUST_STORE,
        RecoveryActionKind.REFRESH_AND_RETRY,
        RecoveryActionKind.CLEAN_CACHE,
        RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE,
    }
)


class RecoveryStatus(str, Enum):
    """Status of a recovery attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PackageSource(BaseModel):
    """Source a package is installed from."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Source identifier, e.g. 'core' or 'flathub'")
    source_type: SourceType = Field(default=SourceType.REPO, description="Kind of source")
    label: str | None = Field(default=None, description="Human-readable source name")

    @property
    def display_name(self) -> str:
        """Label if set, identifier otherwise."""
        return self.label or self.id


class PackageTarget(BaseModel):
    """Identity of the package a session operates on."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Package name")
    source: PackageSource = Field(
        default_factory=lambda: PackageSource(id="repo"), description="Package source"
    )
    repo_hint: str | None = Field(default=None, description="Repository to install from")


class ClassifiedError(BaseModel):
    """Structured interpretation of a diagnostic line.

    Computed on demand from the session log; never stored as
    authoritative session state.
    """

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    title: str
    description: str
    technical: bool = False
    recovery: RecoveryActionKind | None = None
    raw_excerpt: str | None = None

    @property
    def has_automated_remedy(self) -> bool:
        """Whether a single-click remedy (or plain retry) is offered."""
        return self.recovery is not None and self.recovery != RecoveryActionKind.MANUAL


@dataclass(frozen=True, slots=True)
class DiagnosticEvent:
    """One line of session output.

    Attributes:
        text: The raw line.
        origin: Channel that produced the line.
        timestamp: When the line was recorded.
    """

    text: str
    origin: EventOrigin = EventOrigin.PRIMARY
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class RecoveryAttempt:
    """A remedy in flight.

    Exists only while the remedy runs and is discarded afterwards.
    """

    action: RecoveryActionKind
    status: RecoveryStatus = RecoveryStatus.PENDING
    log: list[str] = field(default_factory=list)
    auto_retry: bool = False
    error: ClassifiedError | None = None


@dataclass
class Session:
    """The one live session of a monitor.

    Exclusively owned and mutated by the session controller. Reset, not
    destroyed, when a new operation starts or the monitor is dismissed.
    """

    target: PackageTarget | None = None
    mode: OperationMode = OperationMode.INSTALL
    status: SessionStatus = SessionStatus.IDLE
    events: list[DiagnosticEvent] = field(default_factory=list)
    target_progress: int = 0
    visual_progress: float = 0.0
    phase: Phase = Phase.SAFETY
    status_text: str = ""
    command_preview: str = ""
    minimized: bool = False
    run_id: int = 0
    awaiting_credential: bool = False
    cancel_pending: bool = False
    launch_error: str | None = None
    recovery: RecoveryAttempt | None = None
    auto_retry_fired: bool = False

    @property
    def log_lines(self) -> list[str]:
        """Text of every buffered line, oldest first."""
        return [event.text for event in self.events]

    @property
    def recovering(self) -> bool:
        """Whether a remedy is in progress."""
        return self.recovery is not None and self.recovery.status == RecoveryStatus.PENDING

    def append(
        self,
        text: str,
        origin: EventOrigin = EventOrigin.PRIMARY,
        capacity: int | None = None,
    ) -> None:
        """Append a line, dropping the oldest lines beyond capacity."""
        self.events.append(DiagnosticEvent(text=text, origin=origin))
        if capacity is not None and len(self.events) > capacity:
            del self.events[: len(self.events) - capacity]

    def begin_run(self, target: PackageTarget, mode: OperationMode, *, reset_log: bool) -> int:
        """Reset per-run state for a new executor invocation.

        Returns:
            The identifier of the new run.
        """
        self.target = target
        self.mode = mode
        self.status = SessionStatus.RUNNING
        if reset_log:
            self.events = []
        self.target_progress = 0
        self.visual_progress = 0.0
        self.phase = Phase.SAFETY
        self.status_text = ""
        self.cancel_pending = False
        self.awaiting_credential = False
        self.launch_error = None
        self.run_id += 1
        return self.run_id

    def clear(self) -> None:
        """Return to a pristine idle session, keeping the run counter."""
        fresh = Session(run_id=self.run_id, minimized=self.minimized)
        for item in fields(self):
            setattr(self, item.name, getattr(fresh, item.name))


class SessionSnapshot(BaseModel):
    """Immutable view of the session for presentation subscribers."""

    model_config = ConfigDict(frozen=True)

    status: SessionStatus
    target: PackageTarget | None = None
    mode: OperationMode = OperationMode.INSTALL
    log_lines: tuple[str, ...] = ()
    visual_progress: float = 0.0
    target_progress: int = 0
    phase: Phase = Phase.SAFETY
    status_text: str = ""
    command_preview: str = ""
    classified_error: ClassifiedError | None = None
    offered_recovery: RecoveryActionKind | None = None
    minimized: bool = False
    recovering: bool = False
    recovery_action: RecoveryActionKind | None = None
    cancel_pending: bool = False
    awaiting_credential: bool = False
    run_id: int = 0

    @property
    def is_terminal(self) -> bool:
        """Whether the run ended with a terminal event."""
        return self.status in TERMINAL_STATUSES

    @property
    def settled(self) -> bool:
        """Whether nothing is running and no remedy is in flight."""
        return self.status != SessionStatus.RUNNING and not self.recovering

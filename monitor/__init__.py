"""Store Monitor engine.

Supervises one privileged, long-running package install or uninstall at a
time: reconciles the package manager's free-text output into a progress and
phase model, classifies failures into a fixed taxonomy, and offers bounded
automated remedies with a single automatic retry.

Module Overview:
    classifier: Ordered substring rules mapping a diagnostic line to a ClassifiedError
    config: YAML-based configuration management (XDG spec compliant)
    credentials: Credential type, TTL cache, prompt broker and sudo probes
    errors: Exception hierarchy
    executor: Subprocess executor running pacman, makepkg and flatpak
    interfaces: Abstract base classes for executor, broker and maintenance backend
    maintenance: Privileged repair commands (unlock, keyring, refresh, clean, upgrade)
    models: Session record, snapshots and Pydantic models
    notifications: Desktop notification support via notify-send
    progress: Line heuristics and the displayed-progress ticker step
    recovery: Remedy execution with single auto-retry signalling
    session: The SessionController owning the one live session
    simulation: Scripted executor and maintenance backend for demos
    streaming: Executor event types and stream utilities
    telemetry: Consent-gated, fire-and-forget outcome reporting
"""

from importlib.metadata import version as get_package_version

from monitor.classifier import classify, classify_launch_error, classify_log, find_remedy
from monitor.config import (
    ConfigManager,
    CredentialPolicy,
    MonitorConfig,
    NotificationOptions,
    ProgressConfig,
    TelemetryConfig,
    YamlConfigLoader,
    get_config_dir,
    get_default_config_path,
)
from monitor.credentials import (
    Credential,
    CredentialCache,
    PromptCredentialBroker,
    check_sudo_status,
    get_credential_cache,
    set_credential_cache,
    verify_sudo_password,
)
from monitor.errors import (
    ConfigError,
    CredentialError,
    ExecutorLaunchError,
    MonitorError,
    RemedyError,
)
from monitor.executor import CommandExecutor, command_preview
from monitor.interfaces import (
    CredentialBroker,
    ExecutionHandle,
    MaintenanceBackend,
    OperationExecutor,
)
from monitor.maintenance import CommandMaintenance
from monitor.models import (
    ClassifiedError,
    DiagnosticEvent,
    ErrorKind,
    EventOrigin,
    OperationMode,
    PackageSource,
    PackageTarget,
    Phase,
    RecoveryActionKind,
    RecoveryAttempt,
    RecoveryStatus,
    SessionSnapshot,
    SessionStatus,
    SourceType,
)
from monitor.notifications import NotificationManager
from monitor.progress import ProgressUpdate, advance_visual, estimate, phase_for_status
from monitor.recovery import RecoveryCoordinator
from monitor.session import SessionController
from monitor.simulation import Scenario, ScriptedExecutor, ScriptedMaintenance
from monitor.streaming import LineEvent, TerminalEvent, TerminalOutcome
from monitor.telemetry import TelemetryEmitter, TelemetryEvent, TelemetryOutcome

__version__ = get_package_version("store-monitor")

__all__ = [
    "ClassifiedError",
    "CommandExecutor",
    "CommandMaintenance",
    "ConfigError",
    "ConfigManager",
    "Credential",
    "CredentialBroker",
    "CredentialCache",
    "CredentialError",
    "CredentialPolicy",
    "DiagnosticEvent",
    "ErrorKind",
    "EventOrigin",
    "ExecutionHandle",
    "ExecutorLaunchError",
    "LineEvent",
    "MaintenanceBackend",
    "MonitorConfig",
    "MonitorError",
    "NotificationManager",
    "NotificationOptions",
    "OperationExecutor",
    "OperationMode",
    "PackageSource",
    "PackageTarget",
    "Phase",
    "ProgressConfig",
    "ProgressUpdate",
    "PromptCredentialBroker",
    "RecoveryActionKind",
    "RecoveryAttempt",
    "RecoveryCoordinator",
    "RecoveryStatus",
    "RemedyError",
    "Scenario",
    "ScriptedExecutor",
    "ScriptedMaintenance",
    "SessionController",
    "SessionSnapshot",
    "SessionStatus",
    "SourceType",
    "TelemetryConfig",
    "TelemetryEmitter",
    "TelemetryEvent",
    "TelemetryOutcome",
    "TerminalEvent",
    "TerminalOutcome",
    "YamlConfigLoader",
    "__version__",
    "advance_visual",
    "check_sudo_status",
    "classify",
    "classify_launch_error",
    "classify_log",
    "command_preview",
    "estimate",
    "find_remedy",
    "get_config_dir",
    "get_credential_cache",
    "get_default_config_path",
    "phase_for_status",
    "set_credential_cache",
    "verify_sudo_password",
]

"""Classification of package manager diagnostics.

This module maps a single diagnostic line to a ClassifiedError using an
ordered table of substring rules. Rules are matched against the lower-cased
line and the first match wins, so specific failures are listed before
generic ones.

The presented error always comes from the most recent line of the log,
while remedy eligibility is decided by scanning the whole buffered log
(see find_remedy), because the decisive line is often not the last one
printed before the failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .models import ClassifiedError, ErrorKind, RecoveryActionKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = structlog.get_logger(__name__)

# Maximum length of a raw excerpt embedded in a description
EXCERPT_LIMIT = 200


@dataclass(frozen=True)
class ClassificationRule:
    """One entry of the ordered rule table."""

    kind: ErrorKind
    title: str
    description: str
    patterns: tuple[str, ...]
    recovery: RecoveryActionKind | None
    technical: bool = False
    embed_excerpt: bool = False

    def matches(self, lowered: str) -> bool:
        return any(pattern in lowered for pattern in self.patterns)


RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        kind=ErrorKind.DATABASE_LOCKED,
        title="Package Database Locked",
        description=(
            "Another package operation is holding the database lock, or a "
            "previous operation crashed and left a stale lock file behind."
        ),
        patterns=(
            "database is locked",
            "unable to lock database",
            "could not lock database",
            "db.lck",
            "alpm_err_db_write",
        ),
        recovery=RecoveryActionKind.UNLOCK_RESOURCE,
    ),
    ClassificationRule(
        kind=ErrorKind.TRUST_STORE_INVALID,
        title="Security Keys Out of Date",
        description=(
            "A package signature could not be verified. The local signing "
            "keyring is missing keys or is corrupted."
        ),
        patterns=(
            "gpgme error",
            "pgp signature",
            "invalid or corrupted package",
            "key could not be looked up",
            "unknown public key",
            "signature from",
            "trust database",
            "unknown trust",
            "no valid openpgp data",
            "keyring is not writable",
            "missing from keyring",
            "failed to update keyring",
        ),
        recovery=RecoveryActionKind.REPAIR_TRUST_STORE,
    ),
    ClassificationRule(
        kind=ErrorKind.PACKAGE_NOT_FOUND,
        title="Package Not Found",
        description=(
            "The package is not available in any enabled source. It may have "
            "been renamed or removed."
        ),
        patterns=(
            "target not found",
            "package not found",
            "no results found",
            "not found in any enabled repository",
        ),
        recovery=RecoveryActionKind.RETRY,
    ),
    ClassificationRule(
        kind=ErrorKind.NETWORK_FAILURE,
        title="Download Failed",
        description=(
            "The package could not be downloaded. A mirror may be out of date "
            "or the network connection is unavailable."
        ),
        patterns=(
            "failed retrieving file",
            "failed to synchronize",
            "could not resolve host",
            "connection timed out",
            "error downloading",
            "404",
        ),
        recovery=RecoveryActionKind.REFRESH_AND_RETRY,
    ),
    ClassificationRule(
        kind=ErrorKind.DISK_FULL,
        title="Not Enough Disk Space",
        description="There is not enough free space to download and install the package.",
        patterns=("no space left on device", "not enough free disk space"),
        recovery=RecoveryActionKind.CLEAN_CACHE,
    ),
    ClassificationRule(
        kind=ErrorKind.DEPENDENCY_CONFLICT,
        title="Dependency Conflict",
        description=(
            "The package conflicts with software already installed. The "
            "conflict has to be resolved manually."
        ),
        patterns=(
            "conflicting dependencies",
            "breaks dependency",
            "satisfies dependency",
            "unresolvable package conflicts",
            "could not satisfy dependencies",
        ),
        recovery=RecoveryActionKind.MANUAL,
        technical=True,
    ),
    ClassificationRule(
        kind=ErrorKind.FILE_CONFLICT,
        title="File Conflict",
        description=(
            "Files from this package already exist on the system and are not "
            "owned by any package."
        ),
        patterns=("exists in filesystem", "conflicting files", "file conflict"),
        recovery=RecoveryActionKind.MANUAL,
        technical=True,
    ),
    ClassificationRule(
        kind=ErrorKind.CORRUPT_DOWNLOAD,
        title="Corrupted Download",
        description="A downloaded file failed its integrity check. Retrying usually fixes this.",
        patterns=(
            "corrupted package",
            "failed integrity",
            "integrity check failed",
            "checksum mismatch",
        ),
        recovery=RecoveryActionKind.RETRY,
    ),
    ClassificationRule(
        kind=ErrorKind.PERMISSION_DENIED,
        title="Permission Denied",
        description="The operation was not authorized. Authenticate and try again.",
        patterns=(
            "permission denied",
            "operation not permitted",
            "not authorized",
            "authentication failure",
        ),
        recovery=RecoveryActionKind.RETRY,
    ),
    ClassificationRule(
        kind=ErrorKind.BUILD_TOOLCHAIN_MISSING,
        title="Build Tools Missing",
        description=(
            "Building this package requires the base-devel group. Install it "
            "and try again."
        ),
        patterns=(
            "unknown error has occurred",
            "base-devel",
            "fakeroot binary",
            "make: command not found",
            "gcc: command not found",
            "makepkg: command not found",
        ),
        recovery=RecoveryActionKind.MANUAL,
    ),
    ClassificationRule(
        kind=ErrorKind.BACKEND_UNAVAILABLE,
        title="Backend Unavailable",
        description="The package helper could not be reached.",
        patterns=(
            "helper not found",
            "connection refused",
            "broken pipe",
            "transport endpoint is not connected",
            "service unavailable",
        ),
        recovery=RecoveryActionKind.MANUAL,
        technical=True,
    ),
    ClassificationRule(
        kind=ErrorKind.MALFORMED_RESPONSE,
        title="Unexpected Response",
        description="The package helper returned output that could not be decoded",
        patterns=(
            "failed to parse",
            "invalid json",
            "malformed",
            "decode error",
            "expected value at line",
            "unexpected token",
        ),
        recovery=RecoveryActionKind.MANUAL,
        technical=True,
        embed_excerpt=True,
    ),
)

FALLBACK_TITLE = "Operation Failed"
FALLBACK_DESCRIPTION = "The operation failed with an unrecognized error"


def trim_excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    """Strip a line and cut it to at most ``limit`` characters."""
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[: limit - 1].rstrip() + "…"


def _build(rule: ClassificationRule, excerpt: str) -> ClassifiedError:
    description = rule.description
    if rule.embed_excerpt:
        description = f"{description}: {excerpt}"
    return ClassifiedError(
        kind=rule.kind,
        title=rule.title,
        description=description,
        technical=rule.technical,
        recovery=rule.recovery,
        raw_excerpt=excerpt,
    )


def classify(line: str) -> ClassifiedError | None:
    """Classify one diagnostic line.

    Args:
        line: Raw diagnostic text.

    Returns:
        The classification, or None for a blank line. Any non-blank line
        that no rule matches classifies as Unclassified.
    """
    if not line or not line.strip():
        return None

    excerpt = trim_excerpt(line)
    lowered = line.lower()

    for rule in RULES:
        if rule.matches(lowered):
            return _build(rule, excerpt)

    return ClassifiedError(
        kind=ErrorKind.UNCLASSIFIED,
        title=FALLBACK_TITLE,
        description=f"{FALLBACK_DESCRIPTION}: {excerpt}",
        technical=True,
        recovery=RecoveryActionKind.MANUAL,
        raw_excerpt=excerpt,
    )


def classify_log(lines: Sequence[str]) -> ClassifiedError | None:
    """Classify the most recent non-blank line of a log."""
    for text in reversed(lines):
        if text.strip():
            return classify(text)
    return None


def find_remedy(lines: Iterable[str]) -> ClassifiedError | None:
    """Scan an entire log for a failure with an automated remedy.

    The whole buffer is examined, not just the final line. When several
    lines qualify, the one whose rule comes first in the table wins, so a
    lock error earlier in the log outranks a later generic download error.

    Returns:
        The best remedy-bearing classification, or None if no line offers
        an automated remedy.
    """
    best: ClassifiedError | None = None
    best_rank = len(RULES)

    for text in lines:
        result = classify(text)
        if result is None or not result.has_automated_remedy:
            continue
        rank = _rank(result.kind)
        if rank < best_rank:
            best, best_rank = result, rank

    if best is not None:
        logger.debug("remedy_found", kind=best.kind.value, recovery=best.recovery)
    return best


def _rank(kind: ErrorKind) -> int:
    for index, rule in enumerate(RULES):
        if rule.kind == kind:
            return index
    return len(RULES)


def classify_launch_error(error: BaseException) -> ClassifiedError:
    """Classify a failure to spawn the executor.

    Launch failures have no diagnostic line to match, so they are always
    Unclassified and carry the exception text as the excerpt.
    """
    excerpt = trim_excerpt(str(error) or type(error).__name__)
    return ClassifiedError(
        kind=ErrorKind.UNCLASSIFIED,
        title="Could Not Start Operation",
        description=f"The package helper could not be launched: {excerpt}",
        technical=True,
        recovery=RecoveryActionKind.MANUAL,
        raw_excerpt=excerpt,
    )

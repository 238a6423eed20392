"""Progress estimation from free-text package manager output.

Package managers rarely report overall progress, so the displayed
percentage is reconstructed from two sources:

- estimate(): a pure function that inspects the newest log line and derives
  a target percentage, a status text and a phase.
- advance_visual(): one step of the ticker that moves the displayed value
  toward the target and creeps forward when no new signal arrives, capped
  below completion until a terminal event is received.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import PHASE_ORDER, Phase

if TYPE_CHECKING:
    from .config import ProgressConfig

PERCENT_PATTERN = re.compile(r"(\d{1,3})\s*%")

# Target reached by each phase marker
RESOLVING_TARGET = 5
FETCHING_TARGET = 10
COMPILING_TARGET = 20
# Generic compile lines never push the target beyond this
COMPILE_CREEP_LIMIT = 90

STATUS_RESOLVING = "Resolving Dependencies..."
STATUS_FETCHING = "Downloading Source Code..."
STATUS_BUILDING_DEPS = "Building Dependencies..."
STATUS_COMPILING = "Compiling Source (This may take a while)..."
STATUS_IMPORTING_KEYS = "Security: Importing Signing Keys..."
STATUS_RETRYING_BUILD = "Retrying Build with New Keys..."


@dataclass(frozen=True)
class ProgressUpdate:
    """Result of inspecting one line.

    Attributes:
        target: New target percentage.
        status_text: New status text, or None to keep the current one.
        phase: New phase, or None to keep the current one.
    """

    target: int
    status_text: str | None = None
    phase: Phase | None = None


def estimate(line: str, current_target: int) -> ProgressUpdate:
    """Derive a progress update from the newest log line.

    Markers are evaluated in priority order and the first match wins. An
    explicit percentage sets the target exactly; every other marker only
    raises the target, so without percentages the target never decreases.

    Args:
        line: Newest log line.
        current_target: Target percentage before this line.

    Returns:
        The update to apply. Lines with no marker leave the target unchanged.
    """
    lowered = line.lower()

    match = PERCENT_PATTERN.search(line)
    # Download helpers print "0%" when a transfer starts; that is not a reset
    if match and not (int(match.group(1)) == 0 and "downloading" in lowered):
        return ProgressUpdate(target=max(0, min(100, int(match.group(1)))))

    if "checking dependencies" in lowered or "resolving dependencies" in lowered:
        return ProgressUpdate(
            target=max(current_target, RESOLVING_TARGET),
            status_text=STATUS_RESOLVING,
            phase=Phase.SAFETY,
        )

    if "cloning" in lowered or "fetching" in lowered:
        return ProgressUpdate(
            target=max(current_target, FETCHING_TARGET),
            status_text=STATUS_FETCHING,
            phase=Phase.DOWNLOADING,
        )

    if "makepkg" in lowered:
        return ProgressUpdate(
            target=max(current_target, COMPILING_TARGET),
            status_text=STATUS_COMPILING,
            phase=Phase.INSTALLING,
        )

    if "building" in lowered and "dependencies" in lowered:
        return ProgressUpdate(
            target=current_target,
            status_text=STATUS_BUILDING_DEPS,
            phase=Phase.INSTALLING,
        )

    if "importing pgp key" in lowered or "importing signing key" in lowered:
        return ProgressUpdate(
            target=current_target,
            status_text=STATUS_IMPORTING_KEYS,
            phase=Phase.SAFETY,
        )

    if "retrying build" in lowered:
        return ProgressUpdate(
            target=current_target,
            status_text=STATUS_RETRYING_BUILD,
            phase=Phase.INSTALLING,
        )

    if "compiling" in lowered:
        return ProgressUpdate(
            target=max(current_target, min(current_target + 1, COMPILE_CREEP_LIMIT))
        )

    return ProgressUpdate(target=current_target)


def advance_visual(visual: float, target: int, config: ProgressConfig) -> float:
    """Advance the displayed progress by one tick.

    Far behind the target the display catches up quickly; close to it the
    display crawls; once caught up it creeps forward on its own. The result
    never decreases and never exceeds the creep ceiling.
    """
    difference = target - visual

    if difference > config.catch_up_threshold:
        advanced = visual + config.catch_up_step
    elif difference > 0:
        advanced = visual + config.crawl_step
    else:
        advanced = visual + config.idle_creep_step

    return max(visual, min(advanced, config.creep_ceiling))


def phase_for_status(status_text: str) -> Phase:
    """Map a free-text status back to a phase.

    Unknown text falls back to Safety.
    """
    if any(word in status_text for word in ("Safety", "Resolving", "Lock")):
        return Phase.SAFETY
    if any(word in status_text for word in ("Downloading", "Syncing", "Cloning")):
        return Phase.DOWNLOADING
    if any(word in status_text for word in ("Installing", "Building", "Compiling", "Removing")):
        return Phase.INSTALLING
    if any(word in status_text for word in ("Finalizing", "Complete")):
        return Phase.FINALIZING
    return Phase.SAFETY


def phase_index(phase: Phase) -> int:
    """Return the 1-based position of a phase in the stepper."""
    return PHASE_ORDER.index(phase) + 1

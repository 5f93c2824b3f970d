"""
Version classifier.

Classifies the delta between the running tag and a candidate, and picks
the recommended tag from a filtered candidate set.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from versioning.suffix import match_suffix
from versioning.types import (
    ChangeType,
    MatchGrade,
    ParsedTag,
    Unparseable,
    VersionValue,
)

logger = logging.getLogger(__name__)


def compare_values(a: VersionValue, b: VersionValue) -> Optional[int]:
    """
    Compare two version values.

    Returns:
        -1, 0 or 1 like a classic cmp, or None when the values are not
        comparable (either is Unparseable, or semantic vs date)
    """
    if isinstance(a, Unparseable) or isinstance(b, Unparseable):
        return None
    if a.kind != b.kind:
        return None
    ka, kb = a.key(), b.key()
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def classify(
    current: VersionValue,
    candidate: VersionValue,
    grade: MatchGrade = MatchGrade.EXACT,
    *,
    date_delta_as_major: bool = False
) -> ChangeType:
    """
    Classify the change from current to candidate.

    Args:
        current: Version value of the running tag
        candidate: Version value of the candidate tag
        grade: Suffix match grade between the two tags; anything but EXACT
               means the suffixes differ
        date_delta_as_major: Report date-based increases as MAJOR instead of PATCH

    Returns:
        ChangeType. Equal versions yield NO_CHANGE or REBUILD, never an upgrade.

    Examples:
        >>> classify(SemanticVersion(1, 2, 3), SemanticVersion(1, 3, 0))
        ChangeType.MINOR
        >>> classify(SemanticVersion(1, 2, 3), SemanticVersion(1, 2, 3), MatchGrade.FAMILY)
        ChangeType.REBUILD
    """
    cmp = compare_values(current, candidate)
    if cmp is None:
        return ChangeType.UNKNOWN

    if cmp > 0:
        return ChangeType.DOWNGRADE

    if cmp == 0:
        return ChangeType.NO_CHANGE if grade == MatchGrade.EXACT else ChangeType.REBUILD

    if current.kind == "date":
        return ChangeType.MAJOR if date_delta_as_major else ChangeType.PATCH

    if current.major != candidate.major:
        return ChangeType.MAJOR
    if current.minor != candidate.minor:
        return ChangeType.MINOR
    return ChangeType.PATCH


def classify_tags(
    current: ParsedTag,
    candidate: ParsedTag,
    *,
    date_delta_as_major: bool = False
) -> ChangeType:
    """Classify two parsed tags, grading their suffixes first."""
    grade = match_suffix(current.suffix, candidate.suffix)
    return classify(current.value, candidate.value, grade, date_delta_as_major=date_delta_as_major)


@dataclass(frozen=True)
class Recommendation:
    """Best-ranked candidate for a running tag"""
    tag: str
    parsed: ParsedTag
    change_type: ChangeType
    grade: MatchGrade


def select_recommended(
    current: ParsedTag,
    candidates: Iterable[ParsedTag],
    *,
    date_delta_as_major: bool = False
) -> Optional[Recommendation]:
    """
    Pick the recommended tag among already-filtered candidates.

    Only strict upgrades (PATCH/MINOR/MAJOR) whose suffix shares at least a
    family with the current suffix are eligible. Eligible candidates rank by
    suffix grade first, then by version (higher wins).

    Returns:
        Recommendation, or None when nothing newer matches the running variant
    """
    best: Optional[Recommendation] = None

    for candidate in candidates:
        grade = match_suffix(current.suffix, candidate.suffix)
        if grade == MatchGrade.NONE:
            logger.debug(f"Skipping {candidate.tag}: suffix '{candidate.suffix}' unrelated to '{current.suffix}'")
            continue

        change = classify(current.value, candidate.value, grade, date_delta_as_major=date_delta_as_major)
        if not change.is_upgrade:
            continue

        if best is None or (grade, candidate.value.key()) > (best.grade, best.parsed.value.key()):
            best = Recommendation(tag=candidate.tag, parsed=candidate, change_type=change, grade=grade)

    return best


def select_pin_target(current: ParsedTag, candidates: Iterable[ParsedTag]) -> Optional[ParsedTag]:
    """
    Pick a versioned tag to migrate an unversioned tag (e.g. :latest) to.

    No numeric comparison against the current tag is possible, so the
    highest-versioned candidate sharing the current variant wins.
    """
    best: Optional[ParsedTag] = None
    best_rank = None
    for candidate in candidates:
        if not candidate.is_versioned:
            continue
        grade = match_suffix(current.suffix, candidate.suffix)
        if grade == MatchGrade.NONE:
            continue
        rank = (grade, candidate.kind == "semantic", candidate.value.key())
        if best_rank is None or rank > best_rank:
            best, best_rank = candidate, rank
    return best

"""
Suffix matching for platform variant preference.

Grades, evaluated in precedence order:
- EXACT: suffixes identical ("alpine" / "alpine")
- PREFIX: one is a proper prefix of the other ("alpine" / "alpine3.19")
- FAMILY: same textual stem, differing version-like tail ("alpine3.18" / "alpine3.19"),
  or the same variant once build metadata is stripped ("alpine-ls12" / "alpine-ls15")
- NONE: anything else, including an empty suffix against a non-empty one
"""

import re
from typing import Optional, Tuple

from versioning.parser import strip_build_metadata
from versioning.types import MatchGrade

# Textual stem (letters, optionally joined by - or _) followed by a version-like tail
_FAMILY_PATTERN = re.compile(
    r'^(?P<stem>[A-Za-z]+(?:[-_][A-Za-z]+)*)[-_.]?(?P<tail>\d[0-9A-Za-z.]*)$'
)


def split_family(suffix: str) -> Optional[Tuple[str, str]]:
    """
    Split a suffix into (stem, tail).

    Returns None when the suffix has no version-like tail:
        >>> split_family("alpine3.19")
        ('alpine', '3.19')
        >>> split_family("bookworm") is None
        True
    """
    match = _FAMILY_PATTERN.match(suffix or "")
    if not match:
        return None
    return match.group('stem').lower(), match.group('tail')


def match_suffix(current: str, candidate: str) -> MatchGrade:
    """
    Grade how well a candidate suffix matches the current one.

    Symmetric: match_suffix(a, b) == match_suffix(b, a).
    """
    current = current or ""
    candidate = candidate or ""

    if current == candidate:
        return MatchGrade.EXACT

    if not current or not candidate:
        return MatchGrade.NONE

    if current.startswith(candidate) or candidate.startswith(current):
        return MatchGrade.PREFIX

    # Same variant once per-build decorations (ls123, r3, git hash) are removed
    base = strip_build_metadata(current)
    if base and base == strip_build_metadata(candidate):
        return MatchGrade.FAMILY

    current_family = split_family(current)
    candidate_family = split_family(candidate)
    if current_family and candidate_family:
        if current_family[0] == candidate_family[0] and current_family[1] != candidate_family[1]:
            return MatchGrade.FAMILY

    return MatchGrade.NONE

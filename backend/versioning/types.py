"""
Shared types for the version resolution engine.

A tag parses into a VersionValue (semantic triple, calendar date or
Unparseable) plus the residual suffix. Values are immutable once derived.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum, IntEnum
from typing import Tuple, Union


class ChangeType(str, Enum):
    """Delta between a running tag and a candidate."""
    NO_CHANGE = "no_change"
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"
    DOWNGRADE = "downgrade"
    REBUILD = "rebuild"
    UNKNOWN = "unknown"

    @property
    def is_upgrade(self) -> bool:
        return self in (ChangeType.PATCH, ChangeType.MINOR, ChangeType.MAJOR)


class MatchGrade(IntEnum):
    """Suffix equivalence grades, ordered so that higher is better."""
    NONE = 0
    FAMILY = 1
    PREFIX = 2
    EXACT = 3


@dataclass(frozen=True)
class SemanticVersion:
    """major.minor.patch triple; missing components default to 0"""
    major: int
    minor: int = 0
    patch: int = 0

    kind = "semantic"

    def key(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class DateVersion:
    """Calendar-based version (2024.01.15, 2024-01-15, 20240115)"""
    value: date

    kind = "date"

    def key(self) -> Tuple[int, int, int]:
        return (self.value.year, self.value.month, self.value.day)

    def __str__(self) -> str:
        return self.value.strftime("%Y.%m.%d")


@dataclass(frozen=True)
class Unparseable:
    """No numeric version could be extracted from the tag"""

    kind = "unparseable"

    def key(self) -> Tuple[int, ...]:
        return ()

    def __str__(self) -> str:
        return ""


UNPARSEABLE = Unparseable()

VersionValue = Union[SemanticVersion, DateVersion, Unparseable]


@dataclass(frozen=True)
class ParsedTag:
    """
    Result of parsing a single image tag.

    Attributes:
        tag: Raw tag as it appears in the registry (e.g. "v1.25.3-alpine")
        value: Version value derived from the numeric prefix
        suffix: Residual after the numeric prefix (platform variant, build id, codename)
        is_latest: Tag is "latest" or "latest-<variant>"
        is_prerelease: Suffix starts with a prerelease marker (alpha, beta, rc, dev, ...)
    """
    tag: str
    value: VersionValue
    suffix: str = ""
    is_latest: bool = False
    is_prerelease: bool = False

    @property
    def is_versioned(self) -> bool:
        return not isinstance(self.value, Unparseable)

    @property
    def kind(self) -> str:
        return self.value.kind

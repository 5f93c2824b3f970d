"""
Policy filter for candidate tags.

Runs over the full registry tag list BEFORE classification:
1. Regex filters (include / exclude)
2. Version pin (major, minor or patch; mutually exclusive)
3. latest and other moving tags (only ever used for pin migration)
4. Prereleases, unless the current tag is a prerelease or they are allowed
5. Minimum / maximum version bounds
6. Version kind must match the current tag (semantic vs date)

Configuration problems (bad regex, unparseable bounds) raise
ValidationError when the PolicyConfig is built, never during filtering.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Tuple

from errors import ValidationError
from versioning.classifier import compare_values
from versioning.parser import is_meta_tag, parse_tag
from versioning.types import ParsedTag

logger = logging.getLogger(__name__)


class VersionPin(str, Enum):
    """How many leading components must match the running version"""
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"

    @property
    def width(self) -> int:
        return {"major": 1, "minor": 2, "patch": 3}[self.value]


def _compile(pattern: Optional[str], what: str) -> Optional[Pattern]:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValidationError(f"Invalid {what} regex '{pattern}': {e}")


def _parse_bound(value: Optional[str], what: str) -> Optional[ParsedTag]:
    if not value:
        return None
    parsed = parse_tag(value)
    if not parsed.is_versioned:
        raise ValidationError(f"Invalid {what} version '{value}'")
    return parsed


@dataclass(frozen=True)
class PolicyConfig:
    """
    Per-container candidate policy.

    Built from container labels by updates.labels.LabelConfig.to_policy();
    construction validates regexes and version bounds.
    """
    include_regex: Optional[str] = None
    exclude_regex: Optional[str] = None
    pin: Optional[VersionPin] = None
    allow_latest: bool = False
    allow_prerelease: bool = False
    version_min: Optional[str] = None
    version_max: Optional[str] = None
    date_delta_as_major: bool = False

    _include: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)
    _exclude: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)
    _min: Optional[ParsedTag] = field(default=None, init=False, repr=False, compare=False)
    _max: Optional[ParsedTag] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        # frozen dataclass: compiled forms are cached via object.__setattr__
        object.__setattr__(self, '_include', _compile(self.include_regex, "tag"))
        object.__setattr__(self, '_exclude', _compile(self.exclude_regex, "exclude"))
        object.__setattr__(self, '_min', _parse_bound(self.version_min, "minimum"))
        object.__setattr__(self, '_max', _parse_bound(self.version_max, "maximum"))

        if self._min and self._max:
            cmp = compare_values(self._min.value, self._max.value)
            if cmp is not None and cmp > 0:
                raise ValidationError(
                    f"Minimum version {self.version_min} is above maximum {self.version_max}"
                )


@dataclass
class FilterResult:
    """Surviving candidates plus the reason each dropped tag was removed"""
    candidates: List[ParsedTag]
    dropped: List[Tuple[str, str]] = field(default_factory=list)
    latest_allowed: bool = False


def _pin_matches(current: ParsedTag, candidate: ParsedTag, pin: VersionPin) -> bool:
    width = pin.width
    return candidate.value.key()[:width] == current.value.key()[:width]


def filter_candidates(
    current: ParsedTag,
    tags: Iterable[str],
    config: PolicyConfig
) -> FilterResult:
    """
    Apply the policy to a raw tag list.

    Args:
        current: Parsed running tag
        tags: Tags as returned by the registry
        config: Validated policy for this container

    Returns:
        FilterResult with parsed survivors in input order
    """
    result = FilterResult(candidates=[], latest_allowed=config.allow_latest)
    allow_prerelease = config.allow_prerelease or current.is_prerelease

    for tag in tags:
        if config._exclude is not None and config._exclude.search(tag):
            result.dropped.append((tag, "excluded by regex"))
            continue
        if config._include is not None and not config._include.search(tag):
            result.dropped.append((tag, "does not match tag regex"))
            continue

        if is_meta_tag(tag):
            # Moving tags never get a numeric comparison, even when allowed
            result.dropped.append((tag, "moving tag"))
            continue

        candidate = parse_tag(tag)
        if not candidate.is_versioned:
            result.dropped.append((tag, "no version"))
            continue

        if current.is_versioned and candidate.kind != current.kind:
            result.dropped.append((tag, f"{candidate.kind} version vs {current.kind}"))
            continue

        if config.pin is not None and current.is_versioned and not _pin_matches(current, candidate, config.pin):
            result.dropped.append((tag, f"outside {config.pin.value} pin"))
            continue

        if candidate.is_prerelease and not allow_prerelease:
            result.dropped.append((tag, "prerelease"))
            continue

        if config._min is not None:
            cmp = compare_values(candidate.value, config._min.value)
            if cmp is not None and cmp < 0:
                result.dropped.append((tag, f"below minimum {config.version_min}"))
                continue

        if config._max is not None:
            cmp = compare_values(candidate.value, config._max.value)
            if cmp is not None and cmp > 0:
                result.dropped.append((tag, f"above maximum {config.version_max}"))
                continue

        result.candidates.append(candidate)

    logger.debug(
        f"Policy filter kept {len(result.candidates)} of "
        f"{len(result.candidates) + len(result.dropped)} tags for '{current.tag}'"
    )
    return result

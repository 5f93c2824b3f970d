"""
Docker image tag parser.

Turns heterogeneous tag schemes into comparable version values:

    1.25.3-alpine     -> 1.25.3, suffix "alpine"
    v20               -> 20.0.0
    7.2               -> 7.2.0
    2024.01.15-nightly -> date 2024-01-15, suffix "nightly"
    20240115          -> date 2024-01-15
    alpine-perl       -> Unparseable, suffix "alpine-perl"
    latest-alpine     -> latest, suffix "alpine"

Parsing never raises: anything without a consumable numeric prefix is
Unparseable with the whole tag as suffix.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from versioning.types import (
    DateVersion,
    ParsedTag,
    SemanticVersion,
    UNPARSEABLE,
)

logger = logging.getLogger(__name__)

# Date forms are checked BEFORE semantic versions since 2024.01.15 also
# looks like a valid numeric triple
_DATE_PATTERNS = [
    re.compile(r'^(\d{4})\.(\d{1,2})\.(\d{1,2})(?!\d)'),
    re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})(?!\d)'),
    re.compile(r'^(\d{4})(\d{2})(\d{2})(?!\d)'),
]

# Up to three dot-separated numeric components, consumed greedily
_NUMERIC_PATTERN = re.compile(r'^(\d+)(?:\.(\d+))?(?:\.(\d+))?')

_SUFFIX_SEPARATORS = ('-', '_', '.')

PRERELEASE_MARKERS = ('alpha', 'beta', 'rc', 'dev', 'pre', 'preview', 'canary')

# Non-versioned moving tags that never take part in numeric comparison
META_TAGS = frozenset({
    'latest', 'stable', 'main', 'master', 'develop', 'edge', 'nightly',
})

DEFAULT_REGISTRY = "docker.io"


def _strip_v_prefix(tag: str) -> str:
    if len(tag) > 1 and tag[0] in 'vV' and tag[1].isdigit():
        return tag[1:]
    return tag


def _strip_separator(remainder: str) -> str:
    if remainder and remainder[0] in _SUFFIX_SEPARATORS:
        return remainder[1:]
    return remainder


def is_prerelease_suffix(suffix: str) -> bool:
    """
    Check whether a suffix starts with a prerelease marker.

    Matches the marker itself or the marker followed by digits, so "rc1",
    "beta" and "beta.2" are prereleases while "develop" or "alpine" are not.
    """
    if not suffix:
        return False
    first = re.split(r'[-._+]', suffix, maxsplit=1)[0].lower()
    for marker in PRERELEASE_MARKERS:
        if first == marker:
            return True
        if first.startswith(marker) and first[len(marker):].isdigit():
            return True
    return False


def _parse_date(body: str) -> Optional[ParsedTag]:
    for pattern in _DATE_PATTERNS:
        match = pattern.match(body)
        if not match:
            continue
        year, month, day = (int(g) for g in match.groups())
        try:
            value = date(year, month, day)
        except ValueError:
            # 2024.13.45 is not a date; let the numeric rule have it
            return None
        suffix = _strip_separator(body[match.end():])
        return ParsedTag(
            tag="",
            value=DateVersion(value),
            suffix=suffix,
            is_prerelease=is_prerelease_suffix(suffix),
        )
    return None


def parse_tag(tag: str) -> ParsedTag:
    """
    Parse a raw tag string into a ParsedTag.

    Args:
        tag: Tag portion only (no repository), e.g. "1.25.3-alpine"

    Returns:
        ParsedTag with a SemanticVersion, DateVersion or UNPARSEABLE value
    """
    tag = (tag or "").strip()

    if tag == 'latest':
        return ParsedTag(tag=tag, value=UNPARSEABLE, suffix="", is_latest=True)
    if tag.startswith('latest-'):
        return ParsedTag(tag=tag, value=UNPARSEABLE, suffix=tag[len('latest-'):], is_latest=True)

    body = _strip_v_prefix(tag)

    parsed_date = _parse_date(body)
    if parsed_date is not None:
        return ParsedTag(
            tag=tag,
            value=parsed_date.value,
            suffix=parsed_date.suffix,
            is_prerelease=parsed_date.is_prerelease,
        )

    match = _NUMERIC_PATTERN.match(body)
    if match:
        major, minor, patch = match.groups()
        suffix = _strip_separator(body[match.end():])
        return ParsedTag(
            tag=tag,
            value=SemanticVersion(int(major), int(minor or 0), int(patch or 0)),
            suffix=suffix,
            is_prerelease=is_prerelease_suffix(suffix),
        )

    return ParsedTag(tag=tag, value=UNPARSEABLE, suffix=tag)


def is_meta_tag(tag: str) -> bool:
    """True for moving, non-versioned tags such as latest, stable, nightly"""
    lowered = tag.lower()
    return lowered in META_TAGS or lowered.startswith('latest-')


# Per-build decorations appended to a variant suffix
_BUILD_METADATA_PATTERNS = [
    re.compile(r'(?:^|[-_.])ls\d+$'),             # LinuxServer build number (ls123)
    re.compile(r'(?:^|[-_.])r\d+$'),              # Package revision (r3)
    re.compile(r'(?:^|[-_.])\d{12,14}$'),         # Build timestamp
    re.compile(r'[-_.]g?[0-9a-f]{7,40}$'),        # Git hash
]


def strip_build_metadata(suffix: str) -> str:
    """
    Remove build numbers, revisions, timestamps and git hashes from a suffix.

    Used only to group suffixes into the same variant; tags are always
    parsed from their full text.

        >>> strip_build_metadata("alpine-ls123")
        'alpine'
        >>> strip_build_metadata("alpine-abc1234")
        'alpine'
    """
    result = suffix or ""
    changed = True
    while changed and result:
        changed = False
        for pattern in _BUILD_METADATA_PATTERNS:
            stripped = pattern.sub('', result)
            if stripped != result:
                result = stripped
                changed = True
    return result


@dataclass(frozen=True)
class ImageRef:
    """
    Parsed image reference.

    Examples:
        nginx:1.25 -> (docker.io, library/nginx, 1.25, None)
        ghcr.io/user/app:v1.0 -> (ghcr.io, user/app, v1.0, None)
        localhost:5000/app -> (localhost:5000, app, latest, None)
    """
    registry: str
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        """Repository reference without tag, as the user would write it"""
        if self.registry == DEFAULT_REGISTRY:
            repo = self.repository
            if repo.startswith('library/'):
                repo = repo[len('library/'):]
            return repo
        return f"{self.registry}/{self.repository}"

    def with_tag(self, tag: str) -> str:
        return f"{self.name}:{tag}"

    def __str__(self) -> str:
        ref = self.with_tag(self.tag)
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def parse_image_ref(image: str) -> ImageRef:
    """
    Split an image reference into registry, repository, tag and digest.

    The tag is taken after the last ':' that follows the last '/', so
    registry ports (localhost:5000/app) are not mistaken for tags.
    """
    image = image.strip()
    digest = None
    if '@' in image:
        image, digest = image.split('@', 1)

    registry = DEFAULT_REGISTRY
    remainder = image
    if '/' in image:
        first, rest = image.split('/', 1)
        if '.' in first or ':' in first or first == 'localhost':
            registry = first
            remainder = rest

    tag = "latest"
    last_slash = remainder.rfind('/')
    last_colon = remainder.rfind(':')
    if last_colon > last_slash:
        repository, tag = remainder[:last_colon], remainder[last_colon + 1:]
    else:
        repository = remainder

    if registry == DEFAULT_REGISTRY and '/' not in repository:
        repository = f"library/{repository}"

    return ImageRef(registry=registry.lower(), repository=repository, tag=tag, digest=digest)

"""
Versioning Module

Version resolution engine for image tags.

Components:
- parser: raw tag -> ParsedTag (semantic, date-based or unparseable + suffix)
- suffix: Exact/Prefix/Family/None grading of variant suffixes
- classifier: change type between two versions and recommended tag selection
- policy: regex filters, version pins and latest/prerelease handling
"""

from versioning.types import (
    ChangeType,
    MatchGrade,
    SemanticVersion,
    DateVersion,
    Unparseable,
    UNPARSEABLE,
    ParsedTag,
)
from versioning.parser import parse_tag, parse_image_ref, strip_build_metadata, ImageRef
from versioning.suffix import match_suffix
from versioning.classifier import classify, classify_tags, select_recommended, select_pin_target, Recommendation
from versioning.policy import PolicyConfig, VersionPin, FilterResult, filter_candidates

__all__ = [
    'ChangeType',
    'MatchGrade',
    'SemanticVersion',
    'DateVersion',
    'Unparseable',
    'UNPARSEABLE',
    'ParsedTag',
    'parse_tag',
    'parse_image_ref',
    'ImageRef',
    'strip_build_metadata',
    'match_suffix',
    'classify',
    'classify_tags',
    'select_recommended',
    'Recommendation',
    'select_pin_target',
    'PolicyConfig',
    'VersionPin',
    'FilterResult',
    'filter_candidates',
]

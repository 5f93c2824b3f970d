"""
Label-driven container configuration.

Every knob DockPilot honors is a compose label on the service. Labels are
loaded once per check cycle into an immutable LabelConfig; changes are
computed by diffing two snapshots, never by mutating one in place.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from versioning.policy import PolicyConfig, VersionPin

logger = logging.getLogger(__name__)

PRE_UPDATE_CHECK_LABEL = "dockpilot.pre-update-check"
IGNORE_LABEL = "dockpilot.ignore"
ALLOW_LATEST_LABEL = "dockpilot.allow-latest"
ALLOW_PRERELEASE_LABEL = "dockpilot.allow-prerelease"
VERSION_PIN_MAJOR_LABEL = "dockpilot.version-pin-major"
VERSION_PIN_MINOR_LABEL = "dockpilot.version-pin-minor"
VERSION_PIN_PATCH_LABEL = "dockpilot.version-pin-patch"
TAG_REGEX_LABEL = "dockpilot.tag-regex"
TAG_EXCLUDE_LABEL = "dockpilot.tag-exclude"
VERSION_MIN_LABEL = "dockpilot.version-min"
VERSION_MAX_LABEL = "dockpilot.version-max"
RESTART_AFTER_LABEL = "dockpilot.restart-after"

MANAGED_LABELS = (
    IGNORE_LABEL,
    ALLOW_LATEST_LABEL,
    ALLOW_PRERELEASE_LABEL,
    VERSION_PIN_MAJOR_LABEL,
    VERSION_PIN_MINOR_LABEL,
    VERSION_PIN_PATCH_LABEL,
    TAG_REGEX_LABEL,
    TAG_EXCLUDE_LABEL,
    VERSION_MIN_LABEL,
    VERSION_MAX_LABEL,
    PRE_UPDATE_CHECK_LABEL,
    RESTART_AFTER_LABEL,
)

# Compose-managed container labels (set by docker compose itself)
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
COMPOSE_CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
COMPOSE_WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
COMPOSE_DEPENDS_ON_LABEL = "com.docker.compose.depends_on"

_TRUE_VALUES = ("true", "1", "yes")

_PIN_LABELS = {
    VersionPin.MAJOR: VERSION_PIN_MAJOR_LABEL,
    VersionPin.MINOR: VERSION_PIN_MINOR_LABEL,
    VersionPin.PATCH: VERSION_PIN_PATCH_LABEL,
}


def is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def managed_labels(labels: Dict[str, str]) -> Dict[str, str]:
    """Subset of labels DockPilot owns"""
    return {k: v for k, v in (labels or {}).items() if k in MANAGED_LABELS}


def parse_restart_after(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated restart-after label, dropping blanks and duplicates"""
    names = []
    for part in (value or "").split(','):
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return tuple(names)


@dataclass(frozen=True)
class LabelConfig:
    """
    Typed view of a container's DockPilot labels.

    One optional field per label. Built with from_labels(), rendered back
    with to_labels(); diff() computes the change-set between two snapshots.
    """
    ignore: bool = False
    allow_latest: bool = False
    allow_prerelease: bool = False
    pin: Optional[VersionPin] = None
    tag_regex: Optional[str] = None
    tag_exclude: Optional[str] = None
    version_min: Optional[str] = None
    version_max: Optional[str] = None
    pre_update_check: Optional[str] = None
    restart_after: Tuple[str, ...] = ()

    @classmethod
    def from_labels(cls, labels: Dict[str, str]) -> 'LabelConfig':
        labels = labels or {}

        pins = [pin for pin, key in _PIN_LABELS.items() if is_true(labels.get(key))]
        pin = None
        if pins:
            # Narrowest pin wins when hand-edited labels set more than one
            pin = max(pins, key=lambda p: p.width)
            if len(pins) > 1:
                logger.warning(f"Multiple version pins set ({[p.value for p in pins]}), using {pin.value}")

        return cls(
            ignore=is_true(labels.get(IGNORE_LABEL)),
            allow_latest=is_true(labels.get(ALLOW_LATEST_LABEL)),
            allow_prerelease=is_true(labels.get(ALLOW_PRERELEASE_LABEL)),
            pin=pin,
            tag_regex=labels.get(TAG_REGEX_LABEL) or None,
            tag_exclude=labels.get(TAG_EXCLUDE_LABEL) or None,
            version_min=labels.get(VERSION_MIN_LABEL) or None,
            version_max=labels.get(VERSION_MAX_LABEL) or None,
            pre_update_check=labels.get(PRE_UPDATE_CHECK_LABEL) or None,
            restart_after=parse_restart_after(labels.get(RESTART_AFTER_LABEL)),
        )

    def to_labels(self) -> Dict[str, str]:
        """Render as compose labels; defaults are omitted rather than written as false"""
        labels: Dict[str, str] = {}
        if self.ignore:
            labels[IGNORE_LABEL] = "true"
        if self.allow_latest:
            labels[ALLOW_LATEST_LABEL] = "true"
        if self.allow_prerelease:
            labels[ALLOW_PRERELEASE_LABEL] = "true"
        if self.pin is not None:
            labels[_PIN_LABELS[self.pin]] = "true"
        if self.tag_regex:
            labels[TAG_REGEX_LABEL] = self.tag_regex
        if self.tag_exclude:
            labels[TAG_EXCLUDE_LABEL] = self.tag_exclude
        if self.version_min:
            labels[VERSION_MIN_LABEL] = self.version_min
        if self.version_max:
            labels[VERSION_MAX_LABEL] = self.version_max
        if self.pre_update_check:
            labels[PRE_UPDATE_CHECK_LABEL] = self.pre_update_check
        if self.restart_after:
            labels[RESTART_AFTER_LABEL] = ",".join(self.restart_after)
        return labels

    def to_policy(self, date_delta_as_major: bool = False) -> PolicyConfig:
        """Build the candidate policy; raises ValidationError on bad regex/bounds"""
        return PolicyConfig(
            include_regex=self.tag_regex,
            exclude_regex=self.tag_exclude,
            pin=self.pin,
            allow_latest=self.allow_latest,
            allow_prerelease=self.allow_prerelease,
            version_min=self.version_min,
            version_max=self.version_max,
            date_delta_as_major=date_delta_as_major,
        )

    def diff(self, previous: 'LabelConfig') -> 'LabelChangeSet':
        """Change-set that turns previous into self"""
        old = previous.to_labels()
        new = self.to_labels()
        to_set = {k: v for k, v in new.items() if old.get(k) != v}
        to_remove = sorted(k for k in old if k not in new)
        return LabelChangeSet(set=to_set, removed=to_remove)


@dataclass(frozen=True)
class LabelChangeSet:
    """Labels to write and labels to delete in the compose file"""
    set: Dict[str, str]
    removed: List[str]

    @property
    def is_empty(self) -> bool:
        return not self.set and not self.removed

    def to_json(self) -> str:
        payload = dict(self.set)
        for name in self.removed:
            payload[name] = ""
        return json.dumps(payload, sort_keys=True)


class SetLabelsRequest(BaseModel):
    """
    Request to set DockPilot labels on a container.

    None means "leave unchanged". False / empty string removes the label.
    Setting one version pin clears the other two.
    """
    container: str = Field(..., min_length=1, max_length=255)
    ignore: Optional[bool] = None
    allow_latest: Optional[bool] = None
    allow_prerelease: Optional[bool] = None
    version_pin_major: Optional[bool] = None
    version_pin_minor: Optional[bool] = None
    version_pin_patch: Optional[bool] = None
    tag_regex: Optional[str] = Field(None, max_length=500)
    tag_exclude: Optional[str] = Field(None, max_length=500)
    version_min: Optional[str] = Field(None, max_length=100)
    version_max: Optional[str] = Field(None, max_length=100)
    script: Optional[str] = Field(None, max_length=1000)
    restart_after: Optional[str] = Field(None, max_length=2000)
    no_restart: bool = False
    force: bool = False

    @field_validator('restart_after')
    @classmethod
    def normalize_restart_after(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return ",".join(parse_restart_after(v))

    @model_validator(mode='after')
    def single_pin(self) -> 'SetLabelsRequest':
        pins = [self.version_pin_major, self.version_pin_minor, self.version_pin_patch]
        if sum(1 for p in pins if p) > 1:
            raise ValueError("Only one of version_pin_major, version_pin_minor, version_pin_patch may be set")
        return self

    def apply(self, current: LabelConfig) -> LabelConfig:
        """Return the LabelConfig this request produces from current"""
        changes = {}
        for name in ('ignore', 'allow_latest', 'allow_prerelease'):
            value = getattr(self, name)
            if value is not None:
                changes[name] = value

        requested = {
            VersionPin.MAJOR: self.version_pin_major,
            VersionPin.MINOR: self.version_pin_minor,
            VersionPin.PATCH: self.version_pin_patch,
        }
        for pin, value in requested.items():
            if value:
                changes['pin'] = pin
            elif value is False and current.pin == pin and 'pin' not in changes:
                changes['pin'] = None

        for name in ('tag_regex', 'tag_exclude', 'version_min', 'version_max'):
            value = getattr(self, name)
            if value is not None:
                changes[name] = value or None

        if self.script is not None:
            changes['pre_update_check'] = self.script or None
        if self.restart_after is not None:
            changes['restart_after'] = parse_restart_after(self.restart_after)

        return replace(current, **changes)


class RemoveLabelsRequest(BaseModel):
    """Request to remove DockPilot labels from a container."""
    container: str = Field(..., min_length=1, max_length=255)
    label_names: List[str] = Field(..., min_length=1)
    no_restart: bool = False
    force: bool = False

    @field_validator('label_names')
    @classmethod
    def only_managed_labels(cls, v: List[str]) -> List[str]:
        unknown = [name for name in v if name not in MANAGED_LABELS]
        if unknown:
            raise ValueError(f"Not a DockPilot label: {', '.join(unknown)}")
        return v

    def apply(self, current: LabelConfig) -> LabelConfig:
        labels = current.to_labels()
        for name in self.label_names:
            labels.pop(name, None)
        return LabelConfig.from_labels(labels)

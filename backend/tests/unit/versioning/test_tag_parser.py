"""
Unit tests for the image tag parser.

Tests verify:
- Semantic, date-based and unparseable tags
- Suffix extraction keeps combined variants as one unit
- latest / latest-<variant> handling
- Prerelease detection
- Build metadata stripping
- Image reference splitting
"""

import pytest
from datetime import date

from versioning.parser import (
    is_meta_tag,
    is_prerelease_suffix,
    parse_image_ref,
    parse_tag,
    strip_build_metadata,
)
from versioning.types import DateVersion, SemanticVersion, UNPARSEABLE


class TestSemanticTags:
    """Tags with a numeric major[.minor[.patch]] prefix"""

    @pytest.mark.unit
    def test_full_triple_with_suffix(self):
        parsed = parse_tag("1.25.3-alpine")

        assert parsed.value == SemanticVersion(1, 25, 3)
        assert parsed.suffix == "alpine"
        assert parsed.is_versioned
        assert parsed.kind == "semantic"

    @pytest.mark.unit
    def test_missing_components_default_to_zero(self):
        assert parse_tag("7.2").value == SemanticVersion(7, 2, 0)
        assert parse_tag("20").value == SemanticVersion(20, 0, 0)

    @pytest.mark.unit
    def test_v_prefix_is_dropped(self):
        parsed = parse_tag("v20")

        assert parsed.value == SemanticVersion(20, 0, 0)
        assert parsed.suffix == ""
        assert parsed.tag == "v20"

    @pytest.mark.unit
    def test_suffix_without_separator(self):
        parsed = parse_tag("3.19alpine")

        assert parsed.value == SemanticVersion(3, 19, 0)
        assert parsed.suffix == "alpine"

    @pytest.mark.unit
    @pytest.mark.parametrize("tag,triple", [
        ("0.0.1", (0, 0, 1)),
        ("1.2.3", (1, 2, 3)),
        ("10.20.30-bookworm", (10, 20, 30)),
        ("v2.0.15-alpine3.19", (2, 0, 15)),
        ("123.4", (123, 4, 0)),
    ])
    def test_numeric_triple_survives_reserialization(self, tag, triple):
        """Parsing then printing the triple reproduces the same numbers"""
        parsed = parse_tag(tag)

        assert parsed.value.key() == triple
        assert parse_tag(str(parsed.value)).value.key() == triple

    @pytest.mark.unit
    def test_suffix_is_preserved_verbatim(self):
        parsed = parse_tag("2.0.15-Alpine3.19_RC")

        assert parsed.suffix == "Alpine3.19_RC"


class TestDateTags:
    """Calendar versions are recognized before numeric triples"""

    @pytest.mark.unit
    def test_dotted_date_with_suffix(self):
        parsed = parse_tag("2024.01.15-nightly")

        assert parsed.value == DateVersion(date(2024, 1, 15))
        assert parsed.suffix == "nightly"
        assert parsed.kind == "date"

    @pytest.mark.unit
    def test_dashed_and_compact_dates(self):
        assert parse_tag("2024-01-15").value == DateVersion(date(2024, 1, 15))
        assert parse_tag("20240115").value == DateVersion(date(2024, 1, 15))

    @pytest.mark.unit
    def test_impossible_date_falls_back_to_semantic(self):
        parsed = parse_tag("2024.13.45")

        assert parsed.value == SemanticVersion(2024, 13, 45)

    @pytest.mark.unit
    def test_date_prints_dotted(self):
        assert str(parse_tag("20240115").value) == "2024.01.15"


class TestUnparseableTags:

    @pytest.mark.unit
    def test_combined_suffix_stays_one_unit(self):
        """alpine-perl carries no version; the whole tag is the suffix"""
        parsed = parse_tag("alpine-perl")

        assert parsed.value is UNPARSEABLE
        assert parsed.suffix == "alpine-perl"
        assert not parsed.is_versioned

    @pytest.mark.unit
    def test_empty_tag(self):
        parsed = parse_tag("")

        assert parsed.value is UNPARSEABLE
        assert str(parsed.value) == ""

    @pytest.mark.unit
    def test_latest(self):
        parsed = parse_tag("latest")

        assert parsed.is_latest
        assert parsed.suffix == ""
        assert not parsed.is_versioned

    @pytest.mark.unit
    def test_latest_with_variant(self):
        parsed = parse_tag("latest-alpine")

        assert parsed.is_latest
        assert parsed.suffix == "alpine"


class TestPrerelease:

    @pytest.mark.unit
    @pytest.mark.parametrize("tag", ["1.0.0-rc1", "2.0.0-beta", "2.0.0-beta.2", "3.1-alpha-alpine", "1.0.0-dev"])
    def test_prerelease_tags(self, tag):
        assert parse_tag(tag).is_prerelease

    @pytest.mark.unit
    @pytest.mark.parametrize("suffix", ["alpine", "develop", "bookworm", "rcx", ""])
    def test_variant_suffixes_are_not_prereleases(self, suffix):
        assert not is_prerelease_suffix(suffix)


class TestMetaTags:

    @pytest.mark.unit
    @pytest.mark.parametrize("tag", ["latest", "stable", "Nightly", "edge", "latest-alpine"])
    def test_moving_tags(self, tag):
        assert is_meta_tag(tag)

    @pytest.mark.unit
    @pytest.mark.parametrize("tag", ["1.0", "alpine", "stable-1.0"])
    def test_regular_tags(self, tag):
        assert not is_meta_tag(tag)


class TestBuildMetadata:

    @pytest.mark.unit
    @pytest.mark.parametrize("suffix,expected", [
        ("alpine-ls123", "alpine"),
        ("alpine-abc1234", "alpine"),
        ("alpine-r3", "alpine"),
        ("bookworm-202401151230", "bookworm"),
        ("alpine-r3-ls45", "alpine"),
        ("alpine", "alpine"),
        ("", ""),
    ])
    def test_strip_build_metadata(self, suffix, expected):
        assert strip_build_metadata(suffix) == expected


class TestImageRef:

    @pytest.mark.unit
    def test_official_image(self):
        ref = parse_image_ref("nginx:1.25")

        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"
        assert ref.tag == "1.25"
        assert ref.name == "nginx"

    @pytest.mark.unit
    def test_third_party_registry(self):
        ref = parse_image_ref("ghcr.io/user/app:v1.0")

        assert ref.registry == "ghcr.io"
        assert ref.repository == "user/app"
        assert ref.tag == "v1.0"
        assert ref.with_tag("v1.1") == "ghcr.io/user/app:v1.1"

    @pytest.mark.unit
    def test_registry_port_is_not_a_tag(self):
        ref = parse_image_ref("localhost:5000/app")

        assert ref.registry == "localhost:5000"
        assert ref.repository == "app"
        assert ref.tag == "latest"

    @pytest.mark.unit
    def test_digest_is_split_off(self):
        ref = parse_image_ref(f"linuxserver/sonarr:4.0@sha256:{'c' * 64}")

        assert ref.repository == "linuxserver/sonarr"
        assert ref.tag == "4.0"
        assert ref.digest == f"sha256:{'c' * 64}"
        assert str(ref) == f"linuxserver/sonarr:4.0@sha256:{'c' * 64}"

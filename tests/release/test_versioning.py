"""Tests for version parsing and the VersionResolver."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.release_orchestrator.exceptions import InvalidRequestError, InvalidVersionFormat
from src.release_orchestrator.versioning import (
    VersionResolver,
    is_valid_version,
    latest_stable,
    parse_version,
    previous_release,
    short_sha,
    try_parse_version,
)
from src.release_shared.models import (
    Environment,
    RefKind,
    SemanticVersion,
    VersionScheme,
)

SHA = "A1B2C3D4E5F60718293a4b5c6d7e8f9012345678"
NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# parse_version
# ---------------------------------------------------------------------------


class TestParseVersion:
    """Strict version grammar."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("v1.2.3", SemanticVersion(1, 2, 3)),
            ("v0.0.0", SemanticVersion(0, 0, 0)),
            ("v10.20.30", SemanticVersion(10, 20, 30)),
            ("v2.0.0-rc.1", SemanticVersion(2, 0, 0, "rc.1")),
            ("v1.4.0-hotfix.2", SemanticVersion(1, 4, 0, "hotfix.2")),
            ("v1.0.0-beta.0", SemanticVersion(1, 0, 0, "beta.0")),
        ],
    )
    def test_valid_versions(self, text, expected):
        assert parse_version(text) == expected

    @pytest.mark.parametrize(
        "text",
        [
            "1.2.3",
            "v1.2",
            "v01.2.3",
            "v1.2.3-rc",
            "v1.2.3-gamma.1",
            "v1.2.3-rc.01",
            "V1.2.3",
            "",
            "release/1.2.3",
        ],
    )
    def test_invalid_versions_raise(self, text):
        with pytest.raises(InvalidVersionFormat) as exc_info:
            parse_version(text)
        assert exc_info.value.version == text

    def test_str_round_trips(self):
        assert str(parse_version("v2.0.0-rc.1")) == "v2.0.0-rc.1"

    def test_is_valid_version(self):
        assert is_valid_version("v1.0.0")
        assert not is_valid_version("v1.0.0-pre.abcdef1")


class TestTryParseVersion:
    def test_accepts_generated_prerelease(self):
        version = try_parse_version("v1.4.1-pre.a1b2c3d")
        assert version == SemanticVersion(1, 4, 1, "pre.a1b2c3d")

    def test_returns_none_for_garbage(self):
        assert try_parse_version("not-a-version") is None
        assert try_parse_version("dev-a1b2c3d-20240501-1230") is None


class TestOrdering:
    """Semantic ordering of versions."""

    def test_stable_sorts_after_prerelease(self):
        assert parse_version("v2.0.0-rc.1") < parse_version("v2.0.0")

    def test_numeric_prerelease_counter(self):
        assert parse_version("v2.0.0-rc.2") < parse_version("v2.0.0-rc.10")

    def test_base_dominates(self):
        assert parse_version("v1.9.9") < parse_version("v1.10.0")


class TestTagQueries:
    TAGS = ["v1.2.0", "v1.3.0", "v1.3.1-rc.1", "v1.2.5", "junk", "v2.0.0-rc.1"]

    def test_latest_stable_ignores_prereleases(self):
        assert latest_stable(self.TAGS) == SemanticVersion(1, 3, 0)

    def test_latest_stable_none_without_stable_tags(self):
        assert latest_stable(["v1.0.0-rc.1", "junk"]) is None

    def test_previous_release_excludes_self(self):
        assert previous_release(self.TAGS, parse_version("v1.3.0")) == SemanticVersion(1, 2, 5)

    def test_previous_release_excludes_same_base_for_prerelease(self):
        tags = ["v1.3.0", "v1.4.0"]
        assert previous_release(tags, parse_version("v1.4.0-rc.1")) == SemanticVersion(1, 3, 0)

    def test_previous_release_none_for_first_release(self):
        assert previous_release([], parse_version("v1.0.0")) is None


class TestShortSha:
    def test_lowercases_and_truncates(self):
        assert short_sha(SHA) == "a1b2c3d"

    def test_short_sha_rejected(self):
        with pytest.raises(InvalidRequestError):
            short_sha("abc12")


# ---------------------------------------------------------------------------
# VersionResolver
# ---------------------------------------------------------------------------


class TestResolverShaTimestamp:
    """Development and staging receive SHA/timestamp identifiers."""

    def setup_method(self):
        self.resolver = VersionResolver()

    @pytest.mark.parametrize(
        "env, prefix",
        [(Environment.DEVELOPMENT, "dev"), (Environment.STAGING, "staging")],
    )
    def test_format(self, env, prefix):
        resolved = self.resolver.resolve("main", RefKind.BRANCH, env, [], SHA, now=NOW)
        assert resolved.raw == f"{prefix}-a1b2c3d-20240501-1230"
        assert resolved.scheme == VersionScheme.SHA_TIMESTAMP
        assert resolved.semantic is None
        assert not resolved.is_semantic

    def test_timestamp_is_utc(self):
        local = NOW.astimezone(timezone(timedelta(hours=5)))
        resolved = self.resolver.resolve("main", RefKind.BRANCH, Environment.DEVELOPMENT, [], SHA, now=local)
        assert resolved.raw.endswith("20240501-1230")

    def test_deterministic_for_fixed_clock(self):
        first = self.resolver.resolve("main", RefKind.BRANCH, Environment.STAGING, [], SHA, now=NOW)
        second = self.resolver.resolve("main", RefKind.BRANCH, Environment.STAGING, [], SHA, now=NOW)
        assert first == second

    def test_tag_ref_still_gets_sha_version_in_staging(self):
        resolved = self.resolver.resolve("v1.2.3", RefKind.TAG, Environment.STAGING, [], SHA, now=NOW)
        assert resolved.scheme == VersionScheme.SHA_TIMESTAMP

    def test_short_sha_rejected(self):
        with pytest.raises(InvalidRequestError):
            self.resolver.resolve("main", RefKind.BRANCH, Environment.DEVELOPMENT, [], "abc", now=NOW)


class TestResolverSemantic:
    """Pre-production and production receive semantic versions."""

    def setup_method(self):
        self.resolver = VersionResolver()

    def test_tag_used_verbatim(self):
        resolved = self.resolver.resolve(
            "v2.0.0", RefKind.TAG, Environment.PRE_PRODUCTION, ["v1.9.0"], SHA, now=NOW
        )
        assert resolved.raw == "v2.0.0"
        assert resolved.scheme == VersionScheme.SEMANTIC
        assert resolved.tag_to_create is None

    def test_prerelease_tag(self):
        resolved = self.resolver.resolve(
            "v2.0.0-rc.1", RefKind.TAG, Environment.PRE_PRODUCTION, [], SHA, now=NOW
        )
        assert resolved.scheme == VersionScheme.SEMANTIC_PRERELEASE
        assert resolved.semantic == SemanticVersion(2, 0, 0, "rc.1")

    def test_malformed_tag_raises(self):
        with pytest.raises(InvalidVersionFormat):
            self.resolver.resolve("v2.0", RefKind.TAG, Environment.PRE_PRODUCTION, [], SHA, now=NOW)

    def test_release_branch_requests_tag(self):
        resolved = self.resolver.resolve(
            "release/1.4.0", RefKind.BRANCH, Environment.PRE_PRODUCTION, ["v1.3.0"], SHA, now=NOW
        )
        assert resolved.raw == "v1.4.0"
        assert resolved.scheme == VersionScheme.SEMANTIC
        assert resolved.tag_to_create == "v1.4.0"

    def test_release_branch_with_existing_tag(self):
        resolved = self.resolver.resolve(
            "release/1.4.0", RefKind.BRANCH, Environment.PRE_PRODUCTION, ["v1.4.0"], SHA, now=NOW
        )
        assert resolved.tag_to_create is None

    def test_generated_prerelease_bumps_latest_stable(self):
        resolved = self.resolver.resolve(
            "main",
            RefKind.BRANCH,
            Environment.PRE_PRODUCTION,
            ["v1.3.0", "v1.4.0-rc.1", "v1.2.9"],
            SHA,
            now=NOW,
        )
        assert resolved.raw == "v1.3.1-pre.a1b2c3d"
        assert resolved.scheme == VersionScheme.SEMANTIC_PRERELEASE

    def test_generated_prerelease_seeds_from_zero(self):
        resolved = self.resolver.resolve("main", RefKind.BRANCH, Environment.PRODUCTION, [], SHA, now=NOW)
        assert resolved.raw == "v0.0.1-pre.a1b2c3d"

    def test_semantic_resolution_ignores_clock(self):
        later = NOW + timedelta(days=3)
        first = self.resolver.resolve("main", RefKind.BRANCH, Environment.PRODUCTION, ["v1.0.0"], SHA, now=NOW)
        second = self.resolver.resolve("main", RefKind.BRANCH, Environment.PRODUCTION, ["v1.0.0"], SHA, now=later)
        assert first == second


class TestResolverForceVersion:
    def setup_method(self):
        self.resolver = VersionResolver()

    def test_force_version_used_for_production(self):
        resolved = self.resolver.resolve(
            "main", RefKind.BRANCH, Environment.PRODUCTION, ["v1.0.0"], SHA,
            now=NOW, force_version="v3.0.0",
        )
        assert resolved.raw == "v3.0.0"
        assert resolved.scheme == VersionScheme.SEMANTIC

    def test_force_version_ignored_for_other_environments(self):
        resolved = self.resolver.resolve(
            "main", RefKind.BRANCH, Environment.STAGING, [], SHA,
            now=NOW, force_version="v3.0.0",
        )
        assert resolved.scheme == VersionScheme.SHA_TIMESTAMP

    def test_malformed_force_version_raises_for_any_environment(self):
        with pytest.raises(InvalidVersionFormat):
            self.resolver.resolve(
                "main", RefKind.BRANCH, Environment.DEVELOPMENT, [], SHA,
                now=NOW, force_version="3.0",
            )

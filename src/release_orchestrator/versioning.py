"""Version identifier resolution.

Development and Staging receive ``{prefix}-{sha7}-{YYYYMMDD-HHmm}``
identifiers; Pre-Production and Production receive semantic versions,
taken verbatim from a tag, derived from a ``release/X.Y.Z`` branch, or
generated as ``v{M}.{m}.{p+1}-pre.{sha7}`` over the latest stable tag.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from src.release_orchestrator.exceptions import InvalidRequestError, InvalidVersionFormat
from src.release_shared.constants import (
    GENERATED_PRERELEASE_PATTERN,
    RELEASE_BRANCH_PATTERN,
    SEED_VERSION,
    SHA_TIMESTAMP_FORMAT,
    SHORT_SHA_LENGTH,
    VERSION_PATTERN,
)
from src.release_shared.models import (
    Environment,
    RefKind,
    ResolvedVersion,
    SemanticVersion,
    VersionScheme,
)

logger = logging.getLogger(__name__)


def parse_version(text: str) -> SemanticVersion:
    """Parse *text* against the strict version grammar.

    Raises:
        InvalidVersionFormat: If *text* is not ``vX.Y.Z`` or
            ``vX.Y.Z-(rc|pre|alpha|beta|hotfix).N``.
    """
    match = VERSION_PATTERN.match(text or "")
    if match is None:
        raise InvalidVersionFormat(text)
    major, minor, patch, ident, counter = match.groups()
    prerelease = f"{ident}.{counter}" if ident else None
    return SemanticVersion(int(major), int(minor), int(patch), prerelease)


def try_parse_version(text: str) -> SemanticVersion | None:
    """Parse a strict or generated pre-release version; ``None`` otherwise."""
    try:
        return parse_version(text)
    except InvalidVersionFormat:
        pass
    match = GENERATED_PRERELEASE_PATTERN.match(text or "")
    if match is None:
        return None
    major, minor, patch, sha = match.groups()
    return SemanticVersion(int(major), int(minor), int(patch), f"pre.{sha}")


def is_valid_version(text: str) -> bool:
    return VERSION_PATTERN.match(text or "") is not None


def latest_stable(existing_tags: Iterable[str]) -> SemanticVersion | None:
    """Return the highest stable (non-prerelease) tag, if any."""
    stable = [
        version
        for version in (try_parse_version(tag) for tag in existing_tags)
        if version is not None and not version.is_prerelease
    ]
    return max(stable) if stable else None


def previous_release(
    existing_tags: Iterable[str], version: SemanticVersion
) -> SemanticVersion | None:
    """Return the most recent stable tag other than *version* itself.

    A stable tag sharing the base of a prerelease *version* is excluded
    too, so ``v1.4.0-rc.1`` compares against the release before ``v1.4.0``.
    """
    candidates = [
        tag
        for tag in (try_parse_version(t) for t in existing_tags)
        if tag is not None
        and not tag.is_prerelease
        and tag != version
        and tag.base != version.base
    ]
    return max(candidates) if candidates else None


def short_sha(sha: str) -> str:
    if len(sha) < SHORT_SHA_LENGTH:
        raise InvalidRequestError(f"Commit SHA '{sha}' is shorter than {SHORT_SHA_LENGTH} characters")
    return sha[:SHORT_SHA_LENGTH].lower()


def _scheme_for(version: SemanticVersion) -> VersionScheme:
    return VersionScheme.SEMANTIC_PRERELEASE if version.is_prerelease else VersionScheme.SEMANTIC


class VersionResolver:
    """Computes the version identifier for one target environment.

    Everything except the timestamp component is a pure function of the
    inputs.  The only side effect is *requested*, never performed: a
    ``release/X.Y.Z`` branch without a ``vX.Y.Z`` tag yields a
    :class:`ResolvedVersion` whose ``tag_to_create`` is set.
    """

    def resolve(
        self,
        ref: str,
        ref_kind: RefKind,
        environment: Environment,
        existing_tags: Iterable[str],
        sha: str,
        now: datetime | None = None,
        force_version: str | None = None,
    ) -> ResolvedVersion:
        """Resolve the version for *environment*.

        Args:
            ref: Branch or tag name.
            ref_kind: Whether *ref* is a branch or a tag.
            environment: Target environment.
            existing_tags: Tags reachable from *ref*.
            sha: Full commit SHA.
            now: Clock override for the timestamp component.
            force_version: Manual version override, honoured for
                Production only.

        Returns:
            The resolved version.

        Raises:
            InvalidVersionFormat: If *force_version* is malformed.
        """
        tags = list(existing_tags)

        if force_version is not None:
            forced = parse_version(force_version)
            if environment == Environment.PRODUCTION:
                logger.info("Using forced version %s for %s", force_version, environment.value)
                return ResolvedVersion(
                    environment=environment,
                    raw=force_version,
                    scheme=_scheme_for(forced),
                    semantic=forced,
                )

        if not environment.uses_semantic_version:
            return self._sha_timestamp(environment, sha, now)

        if ref_kind == RefKind.TAG:
            version = parse_version(ref)
            return ResolvedVersion(
                environment=environment,
                raw=ref,
                scheme=_scheme_for(version),
                semantic=version,
            )

        release = RELEASE_BRANCH_PATTERN.match(ref)
        if release is not None:
            major, minor, patch = (int(part) for part in release.groups())
            version = SemanticVersion(major, minor, patch)
            raw = str(version)
            tag_to_create = None if raw in tags else raw
            if tag_to_create:
                logger.info("Release branch %s has no tag %s; requesting creation", ref, raw)
            return ResolvedVersion(
                environment=environment,
                raw=raw,
                scheme=VersionScheme.SEMANTIC,
                semantic=version,
                tag_to_create=tag_to_create,
            )

        base = latest_stable(tags) or parse_version(SEED_VERSION)
        bumped = base.bump_patch()
        version = SemanticVersion(
            bumped.major, bumped.minor, bumped.patch, f"pre.{short_sha(sha)}"
        )
        return ResolvedVersion(
            environment=environment,
            raw=str(version),
            scheme=VersionScheme.SEMANTIC_PRERELEASE,
            semantic=version,
        )

    @staticmethod
    def _sha_timestamp(
        environment: Environment, sha: str, now: datetime | None
    ) -> ResolvedVersion:
        moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        raw = f"{environment.prefix}-{short_sha(sha)}-{moment.strftime(SHA_TIMESTAMP_FORMAT)}"
        return ResolvedVersion(
            environment=environment,
            raw=raw,
            scheme=VersionScheme.SHA_TIMESTAMP,
        )

"""Deployment target selection.

Targets are chosen by an ordered table of :class:`TargetRule` rows; the
first matching row wins.  Adding a branch pattern means adding a row.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from src.release_orchestrator.exceptions import ConfigurationError
from src.release_shared.models import Environment, RefKind, TriggerSource

logger = logging.getLogger(__name__)


class ReleaseHistory(Protocol):
    """Query surface needed to detect already-released tags."""

    def succeeded(self, version: str, environment: Environment) -> bool: ...


@dataclass(frozen=True)
class TargetRule:
    """One row of the target table.

    ``pattern`` is a full-match regular expression applied to the ref
    name; ``ref_kind`` restricts the row to branches or tags.
    """
    name: str
    ref_kind: RefKind
    pattern: str
    environments: tuple[Environment, ...]
    released_tag: bool = False

    def matches(self, ref: str, ref_kind: RefKind) -> bool:
        return ref_kind == self.ref_kind and re.fullmatch(self.pattern, ref) is not None


DEFAULT_RULES: tuple[TargetRule, ...] = (
    TargetRule(
        "stable_tag",
        RefKind.TAG,
        r"v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)",
        (Environment.PRE_PRODUCTION,),
        released_tag=True,
    ),
    TargetRule(
        "prerelease_tag",
        RefKind.TAG,
        r"v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)-(rc|pre)\.(0|[1-9]\d*)",
        (Environment.PRE_PRODUCTION,),
    ),
    TargetRule(
        "mainline",
        RefKind.BRANCH,
        r"main|master",
        (Environment.DEVELOPMENT, Environment.STAGING),
    ),
    TargetRule(
        "release_branch",
        RefKind.BRANCH,
        r"release/.+",
        (Environment.STAGING, Environment.PRE_PRODUCTION),
    ),
    TargetRule("develop", RefKind.BRANCH, r"develop|development", (Environment.DEVELOPMENT,)),
    TargetRule("staging", RefKind.BRANCH, r"staging|qa|sqe", (Environment.STAGING,)),
    TargetRule(
        "preprod", RefKind.BRANCH, r"preprod|pre-production", (Environment.PRE_PRODUCTION,)
    ),
)

DEFAULT_TARGETS: tuple[Environment, ...] = (Environment.DEVELOPMENT,)


def order_environments(environments: Iterable[Environment]) -> tuple[Environment, ...]:
    """Deduplicate and sort into fixed deployment order."""
    return tuple(sorted(set(environments), key=lambda env: env.order))


def rule_from_dict(data: dict[str, Any]) -> TargetRule:
    """Build a rule from a ``targets.extra_rules`` config entry."""
    try:
        environments = tuple(Environment(e) for e in data["environments"])
        rule = TargetRule(
            name=str(data.get("name") or data["pattern"]),
            ref_kind=RefKind(data.get("ref_kind", RefKind.BRANCH.value)),
            pattern=str(data["pattern"]),
            environments=order_environments(environments),
        )
        re.compile(rule.pattern)
    except (KeyError, ValueError, TypeError, re.error) as exc:
        raise ConfigurationError(f"Invalid target rule {data!r}: {exc}") from exc
    return rule


class DeploymentTargetSelector:
    """Selects the environments a ref deploys to.

    Usage
    -----
    ::

        selector = DeploymentTargetSelector(extra_rules=config.targets.rules())
        targets = selector.select("release/1.4.0", RefKind.BRANCH)
    """

    def __init__(self, extra_rules: Sequence[TargetRule] = ()) -> None:
        # Custom rows are consulted after the built-in tag rules and before
        # the built-in branch rules.
        tag_rules = [r for r in DEFAULT_RULES if r.ref_kind == RefKind.TAG]
        branch_rules = [r for r in DEFAULT_RULES if r.ref_kind == RefKind.BRANCH]
        self._rules: tuple[TargetRule, ...] = (*tag_rules, *extra_rules, *branch_rules)

    @property
    def rules(self) -> tuple[TargetRule, ...]:
        return self._rules

    def select(
        self,
        ref: str,
        ref_kind: RefKind,
        environment_override: Environment | None = None,
        trigger: TriggerSource = TriggerSource.PUSH,
        history: ReleaseHistory | None = None,
    ) -> tuple[Environment, ...]:
        """Return the target environments in deployment order.

        An empty tuple means there is nothing to deploy: the ref is a
        stable tag already released to Production and the run was not
        manually dispatched.
        """
        if environment_override is not None:
            logger.info("Environment override: %s", environment_override.value)
            return (environment_override,)

        for rule in self._rules:
            if not rule.matches(ref, ref_kind):
                continue
            if rule.released_tag and history is not None and history.succeeded(
                ref, Environment.PRODUCTION
            ):
                if trigger == TriggerSource.MANUAL:
                    logger.info("Tag %s already verified; manual dispatch targets production", ref)
                    return (Environment.PRODUCTION,)
                logger.info("Tag %s already released to production; nothing to deploy", ref)
                return ()
            logger.info(
                "Ref %s (%s) matched target rule '%s' -> %s",
                ref,
                ref_kind.value,
                rule.name,
                ", ".join(e.value for e in rule.environments),
            )
            return rule.environments

        logger.info("Ref %s matched no target rule; defaulting to development", ref)
        return DEFAULT_TARGETS

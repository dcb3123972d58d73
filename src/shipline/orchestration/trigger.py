"""Trigger context and gating — why a run exists and what it may do.

Manifesto:
    The reason a pipeline run exists (a push to ``main``, a pull request, a
scheduled tick) is captured once, as an immutable ``TriggerContext`` value,
and threaded explicitly through planning.  Nothing reads trigger state from
the environment after that point.

ARCHITECTURE
────────────
::

    TriggerContext      ── event, ref, changed paths, commit (frozen)
    TriggerFilter       ── run-level gate (branches / ignored paths / marker)
    LoopGuard           ── single source for the commit marker and the
                           descriptor path the filter must ignore
    Predicate helpers   ── always, on_branch, on_event, all_of, any_of

The self-mutating deployment write is broken in two places that must agree:
the updater stamps ``LoopGuard.marker`` on its commit, and the filter built by
``TriggerFilter.from_loop_guard`` ignores both that marker and
``LoopGuard.descriptor_path``.

Tags:
    shipline, orchestration, trigger, gating, loop-breaking

Doc-Types:
    api-reference
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from shipline.core.errors import ConfigError, InvalidConfigError

BRANCH_REF_PREFIX = "refs/heads/"


class EventKind(str, Enum):
    """Why the pipeline was triggered."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class TriggerContext:
    """
    Immutable record describing why a pipeline run exists.

    Attributes:
        event: Event kind (push, pull_request, schedule)
        ref: Target branch reference (``refs/heads/main`` or ``main``)
        changed_paths: Repository paths touched by the triggering change
        commit: Commit identifier the run builds
        commit_message: Head commit message, if known
        repository: ``owner/name`` slug, if known
    """

    event: EventKind
    ref: str
    changed_paths: frozenset[str] = field(default_factory=frozenset)
    commit: str = ""
    commit_message: str = ""
    repository: str = ""

    def __post_init__(self):
        if not isinstance(self.event, EventKind):
            object.__setattr__(self, "event", EventKind(self.event))
        if not isinstance(self.changed_paths, frozenset):
            object.__setattr__(self, "changed_paths", frozenset(self.changed_paths))

    @property
    def branch(self) -> str:
        """Branch name without the ``refs/heads/`` prefix."""
        if self.ref.startswith(BRANCH_REF_PREFIX):
            return self.ref[len(BRANCH_REF_PREFIX):]
        return self.ref

    @property
    def short_sha(self) -> str:
        return self.commit[:7]

    def to_env(self) -> dict[str, str]:
        """Environment exported to job tools; the inverse of :meth:`from_env`."""
        return {
            "SHIPLINE_EVENT": self.event.value,
            "SHIPLINE_REF": self.ref,
            "SHIPLINE_BRANCH": self.branch,
            "SHIPLINE_SHA": self.commit,
            "SHIPLINE_REPOSITORY": self.repository,
        }

    @classmethod
    def from_env(
        cls,
        environ: dict[str, str] | None = None,
        changed_paths: Iterable[str] = (),
    ) -> TriggerContext:
        """
        Build a context from host-supplied environment variables.

        ``SHIPLINE_*`` variables win over the ``GITHUB_*`` ones that GitHub
        Actions exports, so the same entry point works on any host.
        """
        env = os.environ if environ is None else environ

        def pick(*names: str, default: str = "") -> str:
            for name in names:
                value = env.get(name)
                if value:
                    return value
            return default

        event = pick("SHIPLINE_EVENT", "GITHUB_EVENT_NAME", default=EventKind.PUSH.value)
        try:
            kind = EventKind(event)
        except ValueError as e:
            raise InvalidConfigError("event", event, f"Unsupported trigger event: {event!r}") from e

        env_paths = pick("SHIPLINE_CHANGED_PATHS")
        paths = set(changed_paths)
        if env_paths:
            paths.update(p.strip() for p in env_paths.split(",") if p.strip())

        return cls(
            event=kind,
            ref=pick("SHIPLINE_REF", "GITHUB_REF", default=f"{BRANCH_REF_PREFIX}main"),
            changed_paths=frozenset(paths),
            commit=pick("SHIPLINE_SHA", "GITHUB_SHA"),
            commit_message=pick("SHIPLINE_COMMIT_MESSAGE"),
            repository=pick("SHIPLINE_REPOSITORY", "GITHUB_REPOSITORY"),
        )


# =============================================================================
# Gating predicates
# =============================================================================

Predicate = Callable[[TriggerContext], bool]


def always(trigger: TriggerContext) -> bool:
    """Default gate: the job always runs."""
    return True


def on_branch(*branches: str) -> Predicate:
    """Gate a job on the target branch."""
    allowed = frozenset(b.removeprefix(BRANCH_REF_PREFIX) for b in branches)

    def predicate(trigger: TriggerContext) -> bool:
        return trigger.branch in allowed

    predicate.__name__ = f"on_branch({', '.join(sorted(allowed))})"
    return predicate


def on_event(*events: EventKind | str) -> Predicate:
    """Gate a job on the event kind."""
    allowed = frozenset(EventKind(e) for e in events)

    def predicate(trigger: TriggerContext) -> bool:
        return trigger.event in allowed

    predicate.__name__ = f"on_event({', '.join(sorted(e.value for e in allowed))})"
    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    """Gate that passes only when every predicate passes."""

    def predicate(trigger: TriggerContext) -> bool:
        return all(p(trigger) for p in predicates)

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    """Gate that passes when any predicate passes."""

    def predicate(trigger: TriggerContext) -> bool:
        return any(p(trigger) for p in predicates)

    return predicate


# =============================================================================
# Path globs
# =============================================================================


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**``-aware glob into a compiled regex."""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def path_matches(path: str, pattern: str) -> bool:
    """True when ``path`` matches the glob ``pattern`` (``**`` spans directories)."""
    return _glob_to_regex(pattern.lstrip("/")).match(path.lstrip("/")) is not None


# =============================================================================
# Loop guard and run-level filter
# =============================================================================


@dataclass(frozen=True)
class LoopGuard:
    """
    Shared configuration for both halves of the self-trigger loop break.

    Attributes:
        descriptor_path: Repository path of the deployment descriptor
        marker: Commit-message marker that suppresses a new run
    """

    descriptor_path: str = "kubernetes/deployment.yaml"
    marker: str = "[skip ci]"

    def __post_init__(self):
        if not self.marker.strip():
            raise InvalidConfigError("skip_marker", self.marker, "Loop-breaking marker must not be empty")
        if not self.descriptor_path.strip():
            raise InvalidConfigError("descriptor_path", self.descriptor_path)

    def commit_message(self, image_reference: str, tag: str | None = None) -> str:
        """Commit message for a descriptor update; always carries the marker."""
        label = tag or image_reference
        return f"Update K8s deployment with image: {label} {self.marker}\n\nImage: {image_reference}\n"

    def is_marked(self, message: str) -> bool:
        return self.marker in message


@dataclass(frozen=True)
class EventRule:
    """Per-event part of a ``TriggerFilter``."""

    branches: tuple[str, ...] = ()
    paths_ignore: tuple[str, ...] = ()

    def allows_branch(self, branch: str) -> bool:
        return not self.branches or any(path_matches(branch, b) for b in self.branches)

    def ignores_all(self, paths: frozenset[str]) -> bool:
        if not paths or not self.paths_ignore:
            return False
        return all(any(path_matches(p, pat) for pat in self.paths_ignore) for p in paths)


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of evaluating a ``TriggerFilter``."""

    run: bool
    reason: str = ""


@dataclass(frozen=True)
class TriggerFilter:
    """
    Run-level gate evaluated before any job is planned.

    A run is gated out when its event is not enabled, its branch is not
    allowed, every changed path is ignored, or its commit message carries the
    loop-breaking marker.
    """

    rules: dict[EventKind, EventRule] = field(default_factory=dict)
    loop_guard: LoopGuard | None = None

    def __post_init__(self):
        if self.loop_guard is None:
            return
        push_rule = self.rules.get(EventKind.PUSH)
        if push_rule is not None and not any(
            path_matches(self.loop_guard.descriptor_path, pat) for pat in push_rule.paths_ignore
        ):
            raise ConfigError(
                f"Push trigger does not ignore the deployment descriptor "
                f"'{self.loop_guard.descriptor_path}'; descriptor commits would re-trigger the pipeline"
            )

    @classmethod
    def from_loop_guard(
        cls,
        guard: LoopGuard,
        branches: Iterable[str] = ("main",),
        extra_ignored: Iterable[str] = ("**/*.md",),
        pull_requests: bool = True,
        schedule: bool = False,
    ) -> TriggerFilter:
        """Build the standard filter whose push rule ignores the descriptor."""
        branch_tuple = tuple(branches)
        ignored = (guard.descriptor_path, *extra_ignored)
        rules = {EventKind.PUSH: EventRule(branches=branch_tuple, paths_ignore=ignored)}
        if pull_requests:
            rules[EventKind.PULL_REQUEST] = EventRule(branches=branch_tuple)
        if schedule:
            rules[EventKind.SCHEDULE] = EventRule()
        return cls(rules=rules, loop_guard=guard)

    def evaluate(self, trigger: TriggerContext) -> FilterDecision:
        rule = self.rules.get(trigger.event)
        if rule is None:
            return FilterDecision(False, f"event '{trigger.event.value}' not enabled")
        if not rule.allows_branch(trigger.branch):
            return FilterDecision(False, f"branch '{trigger.branch}' not allowed")
        if self.loop_guard is not None and self.loop_guard.is_marked(trigger.commit_message):
            return FilterDecision(False, f"commit carries '{self.loop_guard.marker}'")
        if rule.ignores_all(trigger.changed_paths):
            return FilterDecision(False, "all changed paths are ignored")
        return FilterDecision(True)

    def should_run(self, trigger: TriggerContext) -> bool:
        return self.evaluate(trigger).run

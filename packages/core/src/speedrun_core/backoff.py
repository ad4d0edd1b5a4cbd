"""Exponential backoff with jitter, shared by every remote call.

One retry loop for GitHub reads, LLM calls and tool fetches means the
give-up rule (max elapsed time) is defined once. Each service gets its own
BackoffPolicy; fields a service leaves unset are inherited from the default
policy.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, fields, replace
from typing import Callable, Iterator, TypeVar

from speedrun_core.durations import parse_duration

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    """The caller's timeout ran out before the operation succeeded."""


@dataclass(frozen=True)
class BackoffPolicy:
    """Parameters of one exponential backoff schedule (seconds).

    A zero field means "inherit from the defaults"; see with_defaults().
    """

    initial_interval: float = 0
    max_interval: float = 0
    multiplier: float = 0
    max_elapsed_time: float = 0
    randomization_factor: float = 0

    def with_defaults(self, defaults: BackoffPolicy) -> BackoffPolicy:
        """Return a copy with every unset field taken from ``defaults``."""
        overrides = {f.name: getattr(defaults, f.name) for f in fields(self) if not getattr(self, f.name)}
        return replace(self, **overrides)

    def intervals(self, rng: random.Random | None = None) -> Iterator[float]:
        """Yield the randomized wait before each retry, forever.

        Each wait is ``interval * (1 ± randomization_factor)``; the base
        interval grows by ``multiplier`` and is capped at ``max_interval``.
        """
        rng = rng or random
        interval = self.initial_interval
        while True:
            delta = self.randomization_factor * interval
            yield rng.uniform(interval - delta, interval + delta)
            interval = min(interval * self.multiplier, self.max_interval)


DEFAULT_POLICY = BackoffPolicy(
    initial_interval=1.0,
    max_interval=10.0,
    multiplier=2.0,
    max_elapsed_time=30.0,
    randomization_factor=0.1,
)

# GitHub APIs are rate limited, so the gateway waits longer overall.
GITHUB_POLICY = BackoffPolicy(
    initial_interval=1.0,
    max_interval=15.0,
    multiplier=2.0,
    max_elapsed_time=60.0,
    randomization_factor=0.2,
)

# LLM calls are slow and gateways shed load, so start later and wait longest.
AI_POLICY = BackoffPolicy(
    initial_interval=2.0,
    max_interval=30.0,
    multiplier=2.0,
    max_elapsed_time=90.0,
    randomization_factor=0.3,
)


@dataclass(frozen=True)
class BackoffConfig:
    """Backoff policies for each remote service."""

    default: BackoffPolicy = DEFAULT_POLICY
    github: BackoffPolicy = GITHUB_POLICY
    ai: BackoffPolicy = AI_POLICY

    @classmethod
    def from_config(cls, config: dict) -> BackoffConfig:
        """Build policies from the ``backoff``, ``github.backoff`` and ``ai.backoff`` sections.

        Only the keys present in a section override anything; the service
        sections inherit from the (already resolved) default section, which
        in turn inherits from the built-in defaults.
        """
        default = _policy_from_section(config.get("backoff")).with_defaults(DEFAULT_POLICY)
        github = _policy_from_section((config.get("github") or {}).get("backoff"))
        ai = _policy_from_section((config.get("ai") or {}).get("backoff"))
        return cls(
            default=default,
            github=github.with_defaults(_merge(GITHUB_POLICY, default, config.get("backoff"))),
            ai=ai.with_defaults(_merge(AI_POLICY, default, config.get("backoff"))),
        )


def _policy_from_section(section: dict | None) -> BackoffPolicy:
    if not section:
        return BackoffPolicy()
    values = {}
    for name in ("initial_interval", "max_interval", "max_elapsed_time"):
        if section.get(name) is not None:
            values[name] = parse_duration(section[name])
    for name in ("multiplier", "randomization_factor"):
        if section.get(name) is not None:
            values[name] = float(section[name])
    return BackoffPolicy(**values)


def _merge(builtin: BackoffPolicy, default: BackoffPolicy, section: dict | None) -> BackoffPolicy:
    """Service built-ins, except where the user set a global value explicitly."""
    if not section:
        return builtin
    explicit = {name: getattr(default, name) for name in section if hasattr(default, name)}
    return replace(builtin, **explicit)


def retry(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    *,
    retry_on: Callable[[Exception], bool] = lambda e: True,
    timeout: float | None = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``operation`` until it succeeds or the backoff budget runs out.

    The budget is ``policy.max_elapsed_time`` or ``timeout``, whichever is
    smaller. When the next wait would overrun it, the last error is
    re-raised (as DeadlineExceeded when it was the caller's timeout that ran
    out). Exceptions for which ``retry_on`` returns False propagate at once.
    """
    start = clock()
    budget = policy.max_elapsed_time
    deadline_is_caller = False
    if timeout is not None and (not budget or timeout < budget):
        budget = timeout
        deadline_is_caller = True

    waits = policy.intervals()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            if not retry_on(e):
                raise
            wait = next(waits)
            elapsed = clock() - start
            if not budget or elapsed + wait > budget:
                logger.error("%s failed after %d attempt(s) in %.1fs: %s", description, attempt, elapsed, e)
                if deadline_is_caller:
                    raise DeadlineExceeded(f"{description} timed out after {elapsed:.1f}s: {e}") from e
                raise
            logger.warning(
                "%s error (attempt %d): %s. Retrying in %.1fs...",
                description,
                attempt,
                e,
                wait,
            )
            sleep(wait)

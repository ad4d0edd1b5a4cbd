"""Enrichment orchestrator: fans out the per-PR fetches and decides when to analyze.

Every public operation submits work to a bounded thread pool, returns the
Future at once and, when the work finishes, emits exactly one typed event to
every subscriber. A presentation layer drives the whole pipeline from those
events without ever blocking on the network.

Per PR, each of diff stats, check status and reviews is owned by exactly one
fetch at a time and moves LOADING → LOADED | FAILED in a single assignment
under the orchestrator lock. The AI analysis starts at most once per head
SHA, and only after all three have LOADED.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from speedrun_core.agent.agent import PRData
from speedrun_core.gh.pull_request import AutoMergeError

if TYPE_CHECKING:
    from speedrun_core.agent.agent import Analysis, AnalysisAgent
    from speedrun_core.gh.models import CheckStatus, DiffStats, PullRequest, Review
    from speedrun_core.gh.pull_request import GitHubGateway

logger = logging.getLogger(__name__)

SEARCH_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_ANALYSIS_TIMEOUT = 120.0
DEFAULT_STAGGER = 0.05
CHECKS_OFFSET = 0.02
REVIEWS_OFFSET = 0.04


class FieldState(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    SKIPPED = "skipped"  # analysis only: a prerequisite failed or the head SHA is unknown
    DISABLED = "disabled"  # analysis only: no agent configured


@dataclass
class PRItem:
    """One PR plus everything the orchestrator has learned about it."""

    pr: PullRequest
    diff_stats: DiffStats | None = None
    diff_state: FieldState = FieldState.LOADING
    diff_error: Exception | None = None
    check_status: CheckStatus | None = None
    checks_state: FieldState = FieldState.LOADING
    checks_error: Exception | None = None
    reviews: list[Review] | None = None
    reviews_state: FieldState = FieldState.LOADING
    reviews_error: Exception | None = None
    analysis: Analysis | None = None
    analysis_state: FieldState = FieldState.LOADING
    analysis_error: Exception | str | None = None
    # Flags for the authenticated user's own reviews.
    reviewed: bool = False
    approved: bool = False
    dismissed: bool = False
    merged: bool = False
    auto_merge: bool = False
    # Head SHA the analysis was started for; guards "once per SHA".
    analyzed_sha: str = ""
    # Bumped when a new commit resets diff/checks so late results are dropped.
    generation: int = 0

    @property
    def id(self) -> str:
        return self.pr.identity


# ---------------------------------------------------------------------- #
# Events                                                                   #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class Event:
    item_id: str = ""
    value: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PRsLoaded(Event):
    pass


@dataclass(frozen=True)
class DiffStatsLoaded(Event):
    pass


@dataclass(frozen=True)
class CheckStatusLoaded(Event):
    pass


@dataclass(frozen=True)
class ReviewsLoaded(Event):
    pass


@dataclass(frozen=True)
class AnalysisLoaded(Event):
    """``value`` is the Analysis; both value and error are None when skipped."""

    skipped: bool = False


@dataclass(frozen=True)
class PRApproved(Event):
    pass


@dataclass(frozen=True)
class PRMerged(Event):
    pass


@dataclass(frozen=True)
class AutoMergeEnabled(Event):
    """``value`` is "enabled", or "merged" when GitHub had nothing to wait for."""


@dataclass(frozen=True)
class Refreshed(Event):
    new_count: int = 0
    updated_count: int = 0


Listener = Callable[[Event], None]


def derive_review_flags(reviews: list[Review], username: str) -> tuple[bool, bool, bool]:
    """(reviewed, approved, dismissed) for ``username``'s reviews."""
    reviewed = approved = dismissed = False
    for review in reviews:
        if review.user != username:
            continue
        reviewed = True
        if review.state == "APPROVED":
            approved = True
        elif review.state == "DISMISSED":
            dismissed = True
    return reviewed, approved, dismissed


# ---------------------------------------------------------------------- #
# Orchestrator                                                             #
# ---------------------------------------------------------------------- #


class Orchestrator:
    def __init__(
        self,
        gateway: GitHubGateway,
        agent: AnalysisAgent | None = None,
        *,
        username: str = "",
        analysis_timeout: float = DEFAULT_ANALYSIS_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        stagger: float = DEFAULT_STAGGER,
        max_workers: int = 8,
        auto_merge_on_approval: str = "ask",
    ):
        self.gateway = gateway
        self.agent = agent
        self.username = username
        self.analysis_timeout = analysis_timeout
        self.read_timeout = read_timeout
        self.stagger = stagger
        self.auto_merge_on_approval = auto_merge_on_approval
        self._items: dict[str, PRItem] = {}
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        # Delayed submissions not yet handed to the pool.
        self._timers: dict[threading.Timer, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="speedrun-enrich")

    # ------------------------------------------------------------------ #
    # Plumbing                                                             #
    # ------------------------------------------------------------------ #

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def items(self) -> list[PRItem]:
        with self._lock:
            return list(self._items.values())

    def get(self, item_id: str) -> PRItem | None:
        with self._lock:
            return self._items.get(item_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pending = list(self._timers.items())
            self._timers.clear()
        for timer, future in pending:
            timer.cancel()
            future.cancel()
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _submit(self, fn: Callable[..., Any], *args) -> Future:
        return self._executor.submit(fn, *args)

    def _submit_after(self, delay: float, fn: Callable[..., Any], *args) -> Future:
        """Submit ``fn`` to the pool once ``delay`` seconds have passed.

        The wait happens on a timer, so a delayed task never holds a worker.
        """
        if delay <= 0:
            return self._submit(fn, *args)

        future: Future = Future()

        def _start():
            with self._lock:
                self._timers.pop(timer, None)
            if not future.set_running_or_notify_cancel():
                return
            try:
                inner = self._submit(fn, *args)
            except RuntimeError as e:
                # The pool shut down while the timer was pending.
                future.set_exception(e)
                return
            inner.add_done_callback(lambda done: _copy_outcome(done, future))

        timer = threading.Timer(delay, _start)
        timer.daemon = True
        with self._lock:
            self._timers[timer] = future
        timer.start()
        return future

    def _emit(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed handling %s", type(event).__name__)

    def _is_current(self, item: PRItem, generation: int | None = None) -> bool:
        if self._items.get(item.id) is not item:
            return False
        return generation is None or item.generation == generation

    def _new_item(self, pr: PullRequest) -> PRItem:
        state = FieldState.LOADING if self.agent is not None else FieldState.DISABLED
        return PRItem(pr=pr, analysis_state=state)

    # ------------------------------------------------------------------ #
    # Loading                                                              #
    # ------------------------------------------------------------------ #

    def fetch_prs(self) -> Future:
        """Search, replace the item list, then start every PR's enrichment."""
        return self._submit(self._fetch_prs)

    def _fetch_prs(self) -> list[PRItem]:
        try:
            prs = self.gateway.search(timeout=SEARCH_TIMEOUT)
        except Exception as e:
            logger.error("Failed to load pull requests: %s", e)
            self._emit(PRsLoaded(error=e))
            return []

        with self._lock:
            self._items = {pr.identity: self._new_item(pr) for pr in prs}
            items = list(self._items.values())
        logger.info("Loaded %d pull requests", len(items))
        self._emit(PRsLoaded(value=items))

        for i, item in enumerate(items):
            self._enrich(item, i * self.stagger * 2, diff=True, checks=True)
        return items

    def _enrich(self, item: PRItem, delay: float, *, diff: bool, checks: bool) -> None:
        if diff:
            self.fetch_diff_stats(item, delay)
        if checks:
            self.fetch_check_status(item, delay + CHECKS_OFFSET)
        self.fetch_reviews(item, delay + REVIEWS_OFFSET)

    def fetch_diff_stats(self, item: PRItem, delay: float = 0) -> Future:
        return self._submit_after(delay, self._fetch_field, item, "diff", self.gateway.get_diff_stats, DiffStatsLoaded)

    def fetch_check_status(self, item: PRItem, delay: float = 0) -> Future:
        return self._submit_after(
            delay, self._fetch_field, item, "checks", self.gateway.get_check_status, CheckStatusLoaded
        )

    def fetch_reviews(self, item: PRItem, delay: float = 0) -> Future:
        return self._submit_after(delay, self._fetch_field, item, "reviews", self.gateway.get_reviews, ReviewsLoaded)

    def _fetch_field(self, item: PRItem, name: str, fetch, event_type: type[Event]):
        """Run one enrichment read and record it as the field's single state transition."""
        generation = item.generation

        value, error = None, None
        try:
            value = fetch(item.pr, timeout=self.read_timeout)
        except Exception as e:
            logger.error("Failed to fetch %s for %s: %s", name, item.id, e)
            error = e

        with self._lock:
            if not self._is_current(item, generation):
                logger.debug("Dropping stale %s result for %s", name, item.id)
                return value
            state = FieldState.FAILED if error else FieldState.LOADED
            if name == "diff":
                item.diff_stats, item.diff_state, item.diff_error = value, state, error
            elif name == "checks":
                item.check_status, item.checks_state, item.checks_error = value, state, error
            else:
                item.reviews, item.reviews_state, item.reviews_error = value, state, error
                if value is not None and self.username:
                    item.reviewed, item.approved, item.dismissed = derive_review_flags(value, self.username)

        self._emit(event_type(item_id=item.id, value=value, error=error))
        self.analyze_if_ready(item)
        return value

    # ------------------------------------------------------------------ #
    # Analysis                                                             #
    # ------------------------------------------------------------------ #

    def analyze_if_ready(self, item: PRItem) -> Future | None:
        """Start the AI analysis if its prerequisites hold; return its Future or None.

        Nothing happens while any of diff/checks/reviews is still LOADING. A
        FAILED prerequisite or an unknown head SHA marks the analysis SKIPPED
        for this cycle.
        """
        skipped_reason = None
        with self._lock:
            if self.agent is None or not self._is_current(item):
                return None
            if item.analysis_state is not FieldState.LOADING:
                return None
            states = (item.diff_state, item.checks_state, item.reviews_state)
            if FieldState.LOADING in states:
                return None
            sha = item.pr.head_sha
            if FieldState.FAILED in states:
                skipped_reason = "prerequisite fetch failed"
            elif not sha:
                skipped_reason = "head SHA unknown"
            elif item.analyzed_sha == sha:
                return None

            if skipped_reason:
                item.analysis_state = FieldState.SKIPPED
                item.analysis_error = skipped_reason
            else:
                item.analyzed_sha = sha
                data = PRData.from_enrichment(item.pr, item.diff_stats, item.check_status, item.reviews)

        if skipped_reason:
            logger.info("Skipping analysis for %s: %s", item.id, skipped_reason)
            self._emit(AnalysisLoaded(item_id=item.id, skipped=True))
            return None
        return self._submit(self._analyze, item, data)

    def _analyze(self, item: PRItem, data: PRData):
        analysis, error = None, None
        try:
            analysis = self.agent.analyze(data, timeout=self.analysis_timeout)
        except Exception as e:
            logger.error("Analysis failed for %s: %s", item.id, e)
            error = e

        with self._lock:
            # A new commit may have arrived while the conversation ran.
            stale = item.analyzed_sha != data.head_sha or item.pr.head_sha != data.head_sha
            if not self._is_current(item) or stale:
                logger.debug("Dropping stale analysis for %s", item.id)
                return analysis
            item.analysis = analysis
            item.analysis_error = error
            item.analysis_state = FieldState.FAILED if error else FieldState.LOADED

        self._emit(AnalysisLoaded(item_id=item.id, value=analysis, error=error))
        return analysis

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def approve(self, item: PRItem) -> Future:
        return self._submit(self._approve, item)

    def _approve(self, item: PRItem) -> None:
        try:
            self.gateway.approve(item.pr)
        except Exception as e:
            self._emit(PRApproved(item_id=item.id, error=e))
            return
        with self._lock:
            item.approved = True
            item.reviewed = True
        self._emit(PRApproved(item_id=item.id, value=item.pr))
        if self.auto_merge_on_approval == "true":
            logger.info("Enabling auto-merge after approving %s", item.id)
            self.enable_auto_merge(item)

    def merge(self, item: PRItem, method: str = "squash") -> Future:
        return self._submit(self._merge, item, method)

    def _merge(self, item: PRItem, method: str) -> None:
        try:
            self.gateway.merge(item.pr, method)
        except Exception as e:
            self._emit(PRMerged(item_id=item.id, error=e))
            return
        with self._lock:
            item.merged = True
        self._emit(PRMerged(item_id=item.id, value=item.pr))

    def enable_auto_merge(self, item: PRItem, method: str = "SQUASH") -> Future:
        return self._submit(self._enable_auto_merge, item, method)

    def _enable_auto_merge(self, item: PRItem, method: str) -> None:
        try:
            self.gateway.enable_auto_merge(item.pr, method)
        except AutoMergeError as e:
            if not e.is_clean_status:
                self._emit(AutoMergeEnabled(item_id=item.id, error=e))
                return
            logger.info("Auto-merge not needed for %s, merging directly", item.id)
            try:
                self.gateway.merge(item.pr, method)
            except Exception as merge_error:
                self._emit(AutoMergeEnabled(item_id=item.id, error=merge_error))
                return
            with self._lock:
                item.merged = True
            self._emit(AutoMergeEnabled(item_id=item.id, value="merged"))
            return
        except Exception as e:
            self._emit(AutoMergeEnabled(item_id=item.id, error=e))
            return
        with self._lock:
            item.auto_merge = True
        self._emit(AutoMergeEnabled(item_id=item.id, value="enabled"))

    # ------------------------------------------------------------------ #
    # Refresh                                                              #
    # ------------------------------------------------------------------ #

    def refresh_all(self) -> Future:
        """Re-run the search and reload only what a new commit could have changed."""
        return self._submit(self._refresh_all)

    def _refresh_all(self) -> tuple[int, int]:
        with self._lock:
            previous = {item_id: item.reviews_state for item_id, item in self._items.items()}
            for item in self._items.values():
                item.reviews_state = FieldState.LOADING

        try:
            prs = self.gateway.search_fresh(timeout=SEARCH_TIMEOUT)
        except Exception as e:
            logger.error("Refresh failed: %s", e)
            with self._lock:
                for item_id, state in previous.items():
                    if item_id in self._items:
                        self._items[item_id].reviews_state = state
            self._emit(Refreshed(error=e))
            return 0, 0

        new_items: list[PRItem] = []
        updated_items: list[PRItem] = []
        unchanged_items: list[PRItem] = []
        with self._lock:
            refreshed: dict[str, PRItem] = {}
            for pr in prs:
                item = self._items.get(pr.identity)
                if item is None:
                    item = self._new_item(pr)
                    new_items.append(item)
                elif item.pr.head_sha and pr.head_sha and item.pr.head_sha != pr.head_sha:
                    logger.info("%s has new commits (%s -> %s)", item.id, item.pr.head_sha[:7], pr.head_sha[:7])
                    self.gateway.invalidate_commit_related_cache(pr)
                    item.generation += 1
                    item.diff_stats, item.diff_state, item.diff_error = None, FieldState.LOADING, None
                    item.check_status, item.checks_state, item.checks_error = None, FieldState.LOADING, None
                    if item.analysis_state is not FieldState.DISABLED:
                        item.analysis, item.analysis_state, item.analysis_error = None, FieldState.LOADING, None
                    item.analyzed_sha = ""
                    item.pr = pr
                    updated_items.append(item)
                else:
                    if not pr.head_sha:
                        pr.head_sha = item.pr.head_sha
                    if item.analysis_state is FieldState.SKIPPED:
                        item.analysis_state, item.analysis_error = FieldState.LOADING, None
                    item.pr = pr
                    unchanged_items.append(item)
                refreshed[item.id] = item
            self._items = refreshed

        logger.info("Refreshed: %d new, %d updated, %d unchanged", len(new_items), len(updated_items), len(unchanged_items))
        self._emit(Refreshed(value=list(refreshed.values()), new_count=len(new_items), updated_count=len(updated_items)))

        reload_ids = {item.id for item in new_items + updated_items}
        for i, item in enumerate(refreshed.values()):
            delay = i * self.stagger
            if item.id in reload_ids:
                self._enrich(item, delay, diff=True, checks=True)
            else:
                self.fetch_reviews(item, delay + REVIEWS_OFFSET)
        return len(new_items), len(updated_items)


def _copy_outcome(source: Future, target: Future) -> None:
    if source.cancelled():
        target.set_exception(CancelledError())
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())

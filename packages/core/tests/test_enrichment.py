"""Tests for the enrichment orchestrator.

The gateway and agent are MagicMocks; the orchestrator's own thread pool runs
the work, and tests poll until the items settle.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from speedrun_core.agent.agent import Analysis, PRData, Recommendation
from speedrun_core.enrichment import (
    AnalysisLoaded,
    AutoMergeEnabled,
    FieldState,
    Orchestrator,
    PRApproved,
    PRMerged,
    PRsLoaded,
    Refreshed,
    derive_review_flags,
)
from speedrun_core.errors import GatewayError
from speedrun_core.gh.models import CheckStatus, DiffStats, PullRequest, Review
from speedrun_core.gh.pull_request import AutoMergeError, CLEAN_STATUS_MARKER


def _pr(number=7, sha="aaa"):
    return PullRequest(owner="acme", repo="web", number=number, title=f"PR {number}", head_sha=sha)


def _gateway(prs=None):
    gateway = MagicMock()
    gateway.search.return_value = prs if prs is not None else [_pr()]
    gateway.get_diff_stats.return_value = DiffStats(additions=3, deletions=1, files=1)
    gateway.get_check_status.return_value = CheckStatus(state="success", description="1 checks: 1 passing")
    gateway.get_reviews.return_value = [Review(state="COMMENTED", user="bob")]
    return gateway


def _agent():
    agent = MagicMock()
    agent.analyze.return_value = Analysis(Recommendation.APPROVE, "LOW", "tiny")
    return agent


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


def _settled(orchestrator):
    items = orchestrator.items
    return bool(items) and all(
        FieldState.LOADING not in (i.diff_state, i.checks_state, i.reviews_state, i.analysis_state) for i in items
    )


class _Recorder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def of(self, event_type):
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def recorder():
    return _Recorder()


@pytest.fixture
def make_orchestrator(recorder):
    created = []

    def _make(gateway, agent=None, **kwargs):
        kwargs.setdefault("username", "me")
        kwargs.setdefault("stagger", 0)
        orchestrator = Orchestrator(gateway, agent, **kwargs)
        orchestrator.subscribe(recorder)
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown(wait=True)


def _load(orchestrator):
    items = orchestrator.fetch_prs().result(timeout=5)
    _wait_until(lambda: _settled(orchestrator))
    return items


# ---------------------------------------------------------------------------
# Initial load
# ---------------------------------------------------------------------------


class TestFetchPRs:
    def test_loads_and_enriches_every_pr(self, make_orchestrator, recorder):
        gateway = _gateway([_pr(1), _pr(2)])
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)

        items = _load(orchestrator)

        assert [i.id for i in items] == ["acme/web#1", "acme/web#2"]
        for item in orchestrator.items:
            assert item.diff_state is FieldState.LOADED
            assert item.checks_state is FieldState.LOADED
            assert item.reviews_state is FieldState.LOADED
            assert item.analysis_state is FieldState.LOADED
            assert item.analysis.recommendation is Recommendation.APPROVE
        assert agent.analyze.call_count == 2
        assert len(recorder.of(PRsLoaded)) == 1

    def test_analysis_receives_enriched_data(self, make_orchestrator):
        agent = _agent()
        orchestrator = make_orchestrator(_gateway(), agent, analysis_timeout=42)

        _load(orchestrator)

        data = agent.analyze.call_args.args[0]
        assert isinstance(data, PRData)
        assert (data.head_sha, data.additions, data.deletions, data.changed_files) == ("aaa", 3, 1, 1)
        assert agent.analyze.call_args.kwargs["timeout"] == 42

    def test_search_failure_emits_error(self, make_orchestrator, recorder):
        gateway = _gateway()
        gateway.search.side_effect = GatewayError("GitHub search failed")
        orchestrator = make_orchestrator(gateway)

        assert orchestrator.fetch_prs().result(timeout=5) == []

        event = recorder.of(PRsLoaded)[0]
        assert not event.ok
        assert orchestrator.items == []

    def test_without_agent_analysis_is_disabled(self, make_orchestrator):
        orchestrator = make_orchestrator(_gateway())
        _load(orchestrator)
        assert orchestrator.items[0].analysis_state is FieldState.DISABLED


class TestAnalysisGating:
    def test_waits_for_all_three_fields(self, make_orchestrator):
        release = threading.Event()
        gateway = _gateway()

        def slow_reviews(pr, timeout=None):
            release.wait(5)
            return []

        gateway.get_reviews.side_effect = slow_reviews
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)

        orchestrator.fetch_prs().result(timeout=5)
        item = orchestrator.items[0]
        _wait_until(lambda: item.diff_state is FieldState.LOADED and item.checks_state is FieldState.LOADED)
        time.sleep(0.05)
        agent.analyze.assert_not_called()

        release.set()
        _wait_until(lambda: _settled(orchestrator))
        agent.analyze.assert_called_once()

    def test_failed_prerequisite_skips_analysis(self, make_orchestrator, recorder):
        gateway = _gateway()
        gateway.get_check_status.side_effect = GatewayError("checks unavailable")
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)

        _load(orchestrator)

        item = orchestrator.items[0]
        assert item.checks_state is FieldState.FAILED
        assert isinstance(item.checks_error, GatewayError)
        # Sibling fields are unaffected.
        assert item.diff_state is FieldState.LOADED
        assert item.analysis_state is FieldState.SKIPPED
        agent.analyze.assert_not_called()
        _wait_until(lambda: recorder.of(AnalysisLoaded))
        assert recorder.of(AnalysisLoaded)[0].skipped

    def test_unknown_head_sha_skips_analysis(self, make_orchestrator):
        agent = _agent()
        orchestrator = make_orchestrator(_gateway([_pr(sha="")]), agent)

        _load(orchestrator)

        assert orchestrator.items[0].analysis_state is FieldState.SKIPPED
        agent.analyze.assert_not_called()

    def test_at_most_once_per_sha(self, make_orchestrator):
        agent = _agent()
        orchestrator = make_orchestrator(_gateway(), agent)
        _load(orchestrator)
        item = orchestrator.items[0]

        assert orchestrator.analyze_if_ready(item) is None
        item.analysis_state = FieldState.LOADING
        assert orchestrator.analyze_if_ready(item) is None

        assert agent.analyze.call_count == 1

    def test_analysis_failure_is_recorded(self, make_orchestrator, recorder):
        agent = _agent()
        agent.analyze.side_effect = RuntimeError("model unavailable")
        orchestrator = make_orchestrator(_gateway(), agent)

        _load(orchestrator)

        item = orchestrator.items[0]
        assert item.analysis_state is FieldState.FAILED
        assert "model unavailable" in str(item.analysis_error)
        _wait_until(lambda: recorder.of(AnalysisLoaded))
        assert not recorder.of(AnalysisLoaded)[0].ok


# ---------------------------------------------------------------------------
# Review flags
# ---------------------------------------------------------------------------


class TestReviewFlags:
    def test_derive_review_flags(self):
        reviews = [
            Review(state="COMMENTED", user="me"),
            Review(state="APPROVED", user="me"),
            Review(state="CHANGES_REQUESTED", user="bob"),
        ]
        assert derive_review_flags(reviews, "me") == (True, True, False)
        assert derive_review_flags([Review(state="DISMISSED", user="me")], "me") == (True, False, True)
        assert derive_review_flags(reviews, "carol") == (False, False, False)

    def test_flags_set_on_items(self, make_orchestrator):
        gateway = _gateway()
        gateway.get_reviews.return_value = [Review(state="APPROVED", user="me")]
        orchestrator = make_orchestrator(gateway)

        _load(orchestrator)

        item = orchestrator.items[0]
        assert item.reviewed and item.approved and not item.dismissed


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def _refresh(self, orchestrator):
        result = orchestrator.refresh_all().result(timeout=5)
        _wait_until(lambda: _settled(orchestrator))
        return result

    def test_new_commit_invalidates_and_reanalyzes(self, make_orchestrator, recorder):
        gateway = _gateway()
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)
        _load(orchestrator)
        item = orchestrator.items[0]
        generation = item.generation

        gateway.search_fresh.return_value = [_pr(sha="bbb")]
        assert self._refresh(orchestrator) == (0, 1)

        invalidated = gateway.invalidate_commit_related_cache.call_args.args[0]
        assert invalidated.head_sha == "bbb"
        assert orchestrator.items[0] is item
        assert item.pr.head_sha == "bbb"
        assert item.generation == generation + 1
        assert gateway.get_diff_stats.call_count == 2
        assert gateway.get_check_status.call_count == 2
        assert [call.args[0].head_sha for call in agent.analyze.call_args_list] == ["aaa", "bbb"]
        event = recorder.of(Refreshed)[0]
        assert (event.new_count, event.updated_count) == (0, 1)

    def test_analysis_of_previous_commit_is_dropped(self, make_orchestrator):
        release_old = threading.Event()
        release_diff = threading.Event()
        gateway = _gateway()

        def diff_stats(pr, timeout=None):
            if pr.head_sha == "bbb":
                release_diff.wait(5)
            return DiffStats(additions=3, deletions=1, files=1)

        def analyze(data, timeout=None):
            if data.head_sha == "aaa":
                release_old.wait(5)
                return Analysis(Recommendation.APPROVE, "LOW", "old commit")
            return Analysis(Recommendation.REVIEW, "MEDIUM", "new commit")

        gateway.get_diff_stats.side_effect = diff_stats
        agent = _agent()
        agent.analyze.side_effect = analyze
        orchestrator = make_orchestrator(gateway, agent)

        orchestrator.fetch_prs().result(timeout=5)
        _wait_until(lambda: agent.analyze.call_count == 1)
        item = orchestrator.items[0]

        gateway.search_fresh.return_value = [_pr(sha="bbb")]
        orchestrator.refresh_all().result(timeout=5)
        release_old.set()
        time.sleep(0.1)

        # The old commit's result must not fill the field the new commit reset.
        assert item.analysis_state is FieldState.LOADING
        assert item.analysis is None

        release_diff.set()
        _wait_until(lambda: _settled(orchestrator))

        assert [call.args[0].head_sha for call in agent.analyze.call_args_list] == ["aaa", "bbb"]
        assert item.analysis_state is FieldState.LOADED
        assert item.analysis.reasoning == "new commit"

    def test_unchanged_pr_only_reloads_reviews(self, make_orchestrator):
        gateway = _gateway()
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)
        _load(orchestrator)

        gateway.search_fresh.return_value = [_pr(sha="aaa")]
        assert self._refresh(orchestrator) == (0, 0)

        gateway.invalidate_commit_related_cache.assert_not_called()
        assert gateway.get_diff_stats.call_count == 1
        assert gateway.get_check_status.call_count == 1
        assert gateway.get_reviews.call_count == 2
        assert agent.analyze.call_count == 1

    def test_empty_sha_on_refresh_keeps_known_sha(self, make_orchestrator):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway, _agent())
        _load(orchestrator)

        gateway.search_fresh.return_value = [_pr(sha="")]
        self._refresh(orchestrator)

        assert orchestrator.items[0].pr.head_sha == "aaa"
        gateway.invalidate_commit_related_cache.assert_not_called()

    def test_new_and_closed_prs(self, make_orchestrator):
        gateway = _gateway([_pr(1)])
        orchestrator = make_orchestrator(gateway, _agent())
        _load(orchestrator)

        gateway.search_fresh.return_value = [_pr(2)]
        assert self._refresh(orchestrator) == (1, 0)

        assert [i.id for i in orchestrator.items] == ["acme/web#2"]

    def test_skipped_analysis_is_retried_after_refresh(self, make_orchestrator):
        gateway = _gateway([_pr(sha="")])
        agent = _agent()
        orchestrator = make_orchestrator(gateway, agent)
        _load(orchestrator)
        assert orchestrator.items[0].analysis_state is FieldState.SKIPPED

        gateway.search_fresh.return_value = [_pr(sha="ccc")]
        self._refresh(orchestrator)

        assert orchestrator.items[0].analysis_state is FieldState.LOADED
        assert agent.analyze.call_args.args[0].head_sha == "ccc"

    def test_failed_search_restores_state(self, make_orchestrator, recorder):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        gateway.search_fresh.side_effect = GatewayError("rate limited")
        assert orchestrator.refresh_all().result(timeout=5) == (0, 0)

        assert orchestrator.items[0].reviews_state is FieldState.LOADED
        assert not recorder.of(Refreshed)[0].ok


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestMutations:
    def test_approve_updates_flags(self, make_orchestrator, recorder):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)
        item = orchestrator.items[0]

        orchestrator.approve(item).result(timeout=5)

        gateway.approve.assert_called_once_with(item.pr)
        assert item.approved and item.reviewed
        assert recorder.of(PRApproved)[0].ok
        gateway.enable_auto_merge.assert_not_called()

    def test_approve_with_auto_merge_enabled(self, make_orchestrator, recorder):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway, auto_merge_on_approval="true")
        _load(orchestrator)

        orchestrator.approve(orchestrator.items[0]).result(timeout=5)

        _wait_until(lambda: recorder.of(AutoMergeEnabled))
        gateway.enable_auto_merge.assert_called_once()
        assert orchestrator.items[0].auto_merge

    def test_approve_failure(self, make_orchestrator, recorder):
        gateway = _gateway()
        gateway.approve.side_effect = GatewayError("Forbidden")
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        orchestrator.approve(orchestrator.items[0]).result(timeout=5)

        assert not orchestrator.items[0].approved
        assert str(recorder.of(PRApproved)[0].error) == "Forbidden"

    def test_merge_marks_item(self, make_orchestrator, recorder):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        orchestrator.merge(orchestrator.items[0]).result(timeout=5)

        gateway.merge.assert_called_once()
        assert orchestrator.items[0].merged
        assert recorder.of(PRMerged)[0].ok

    def test_clean_status_falls_back_to_merge(self, make_orchestrator, recorder):
        gateway = _gateway()
        gateway.enable_auto_merge.side_effect = AutoMergeError(f"Cannot enable auto-merge: {CLEAN_STATUS_MARKER}.")
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        orchestrator.enable_auto_merge(orchestrator.items[0]).result(timeout=5)

        gateway.merge.assert_called_once()
        assert orchestrator.items[0].merged
        assert recorder.of(AutoMergeEnabled)[0].value == "merged"

    def test_other_auto_merge_errors_are_reported(self, make_orchestrator, recorder):
        gateway = _gateway()
        gateway.enable_auto_merge.side_effect = AutoMergeError("Cannot enable auto-merge: pull request is closed.")
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        orchestrator.enable_auto_merge(orchestrator.items[0]).result(timeout=5)

        gateway.merge.assert_not_called()
        assert not recorder.of(AutoMergeEnabled)[0].ok


def test_listener_errors_do_not_stop_delivery(make_orchestrator, recorder):
    orchestrator = make_orchestrator(_gateway())
    broken = MagicMock(side_effect=RuntimeError("listener bug"))
    orchestrator._listeners.insert(0, broken)

    _load(orchestrator)

    assert broken.called
    assert recorder.of(PRsLoaded)


# ---------------------------------------------------------------------------
# Staggering
# ---------------------------------------------------------------------------


class TestStagger:
    def test_offsets_do_not_hold_workers(self, make_orchestrator):
        prs = [_pr(n) for n in range(1, 11)]
        gateway = _gateway(prs)
        started = {}

        def diff_stats(pr, timeout=None):
            started[pr.number] = time.monotonic()
            return DiffStats(additions=1, deletions=0, files=1)

        gateway.get_diff_stats.side_effect = diff_stats
        orchestrator = make_orchestrator(gateway, stagger=0.05, max_workers=2)

        begin = time.monotonic()
        _load(orchestrator)
        elapsed = time.monotonic() - begin

        # Last PR is offset by 9 * 0.05 * 2 = 0.9s; blocking sleeps on two
        # workers would add up to several seconds.
        assert elapsed < 3.0
        assert started[10] - begin >= 0.85
        assert started[1] - begin < 0.5

    def test_delayed_fetch_resolves_with_value(self, make_orchestrator):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        future = orchestrator.fetch_diff_stats(orchestrator.items[0], delay=0.05)

        assert future.result(timeout=5) == DiffStats(additions=3, deletions=1, files=1)
        assert gateway.get_diff_stats.call_count == 2

    def test_shutdown_cancels_pending_fetches(self, make_orchestrator):
        gateway = _gateway()
        orchestrator = make_orchestrator(gateway)
        _load(orchestrator)

        future = orchestrator.fetch_diff_stats(orchestrator.items[0], delay=5)
        orchestrator.shutdown(wait=False)

        assert future.cancelled()
        assert gateway.get_diff_stats.call_count == 1

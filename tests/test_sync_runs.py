# tests/test_sync_runs.py
from datetime import date, timedelta

import pytest

from sync_runs import (
    InvalidTransition,
    SyncAlreadyRunning,
    SyncRunTracker,
    SyncStatus,
    decide_status,
    utc_now,
)

SYNC_DATE = date(2025, 1, 15)


@pytest.fixture()
def tracker(store, logger):
    return SyncRunTracker(store, logger, stale_after_minutes=60)


def test_start_then_finish(tracker):
    run = tracker.start(SYNC_DATE)
    stored = tracker.get(run.id)
    assert stored.status is SyncStatus.RUNNING
    assert stored.end_time is None
    assert stored.records_processed == {}

    tracker.finish(run, SyncStatus.COMPLETED, {"sessions": 3, "pageviews": 9})
    stored = tracker.get(run.id)
    assert stored.status is SyncStatus.COMPLETED
    assert stored.end_time >= stored.start_time
    assert stored.records_processed == {"sessions": 3, "pageviews": 9}
    assert stored.errors_count == 0
    assert stored.error_details is None


def test_error_details_are_recorded(tracker):
    run = tracker.start(SYNC_DATE)
    tracker.finish(
        run,
        SyncStatus.COMPLETED_WITH_ERRORS,
        {"sessions": 3},
        {"video_events": "boom", "cta_clicks": "bang"},
    )
    stored = tracker.get(run.id)
    assert stored.errors_count == 2
    assert stored.error_details == "cta_clicks: bang\nvideo_events: boom"


def test_terminal_runs_cannot_transition_again(tracker):
    run = tracker.start(SYNC_DATE)
    tracker.finish(run, SyncStatus.FAILED, {}, {"extraction": "missing"})
    with pytest.raises(InvalidTransition):
        tracker.finish(run, SyncStatus.COMPLETED, {})
    assert tracker.get(run.id).status is SyncStatus.FAILED


def test_running_is_not_a_terminal_status(tracker):
    run = tracker.start(SYNC_DATE)
    with pytest.raises(InvalidTransition):
        tracker.finish(run, SyncStatus.RUNNING, {})


def test_overlapping_run_for_same_date_is_refused(tracker):
    tracker.start(SYNC_DATE)
    with pytest.raises(SyncAlreadyRunning):
        tracker.start(SYNC_DATE)
    # Other dates are unaffected
    tracker.start(SYNC_DATE + timedelta(days=1))


def test_stale_running_row_does_not_block(store, tracker):
    store.execute(
        """
        INSERT INTO sync_runs (sync_date, start_time, status, records_processed, errors_count)
        VALUES (?, ?, 'running', '{}', 0)
        """,
        [SYNC_DATE, utc_now() - timedelta(hours=5)],
    )
    run = tracker.start(SYNC_DATE)
    assert tracker.latest(SYNC_DATE).id == run.id


@pytest.mark.parametrize(
    "extraction_failed, errors, expected",
    [
        (False, {}, SyncStatus.COMPLETED),
        (False, {"video_events": "x"}, SyncStatus.COMPLETED_WITH_ERRORS),
        (False, {"a": "x", "b": "x", "c": "x", "d": "x"}, SyncStatus.FAILED),
        (True, {}, SyncStatus.FAILED),
    ],
)
def test_decide_status(extraction_failed, errors, expected):
    assert decide_status(extraction_failed, errors, 4) is expected

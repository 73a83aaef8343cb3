"""
Sync run bookkeeping: one sync_runs row per pipeline execution.

running -> completed | completed_with_errors | failed, written once at start
and once at completion. Terminal rows are never updated or deleted.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

import duckdb


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


class InvalidTransition(Exception):
    pass


class SyncAlreadyRunning(Exception):
    pass


@dataclass
class SyncRun:
    id: int
    sync_date: date
    start_time: datetime
    status: SyncStatus = SyncStatus.RUNNING
    end_time: Optional[datetime] = None
    records_processed: Dict[str, int] = field(default_factory=dict)
    errors_count: int = 0
    error_details: Optional[str] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def decide_status(
    extraction_failed: bool, dataset_errors: Dict[str, str], datasets_total: int
) -> SyncStatus:
    """Terminal status from what went wrong; only the tracker calls this."""
    if extraction_failed:
        return SyncStatus.FAILED
    if not dataset_errors:
        return SyncStatus.COMPLETED
    if len(dataset_errors) >= datasets_total:
        return SyncStatus.FAILED
    return SyncStatus.COMPLETED_WITH_ERRORS


class SyncRunTracker:
    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        logger: logging.Logger = None,
        stale_after_minutes: float = 180,
    ):
        self.con = con
        self.logger = logger or logging.getLogger(__name__)
        self.stale_after = timedelta(minutes=stale_after_minutes)

    def _active_run(self, sync_date: date, now: datetime) -> Optional[int]:
        row = self.con.execute(
            """
            SELECT id
            FROM sync_runs
            WHERE sync_date = ? AND status = 'running' AND start_time > ?
            ORDER BY start_time DESC
            LIMIT 1
            """,
            [sync_date, now - self.stale_after],
        ).fetchone()
        return row[0] if row else None

    def start(self, sync_date: date) -> SyncRun:
        """
        Record a new running execution for sync_date.

        Refuses while another non-stale run for the same date is still
        running; abandoned runs older than the stale threshold don't block.
        """
        now = utc_now()
        active = self._active_run(sync_date, now)
        if active is not None:
            raise SyncAlreadyRunning(
                f"Sync run {active} for {sync_date} is still running"
            )

        run_id = self.con.execute(
            """
            INSERT INTO sync_runs (sync_date, start_time, status, records_processed, errors_count)
            VALUES (?, ?, 'running', ?, 0)
            RETURNING id
            """,
            [sync_date, now, json.dumps({})],
        ).fetchone()[0]
        self.logger.info(f"Started sync run {run_id} for {sync_date}")
        return SyncRun(id=run_id, sync_date=sync_date, start_time=now)

    def finish(
        self,
        run: SyncRun,
        status: SyncStatus,
        records_processed: Dict[str, int],
        errors: Dict[str, str] = None,
    ) -> SyncRun:
        """Write the terminal state; a run can be finished exactly once."""
        if not status.is_terminal:
            raise InvalidTransition(f"{status.value} is not a terminal status")

        current = self.con.execute(
            "SELECT status FROM sync_runs WHERE id = ?", [run.id]
        ).fetchone()
        if current is None:
            raise InvalidTransition(f"Sync run {run.id} does not exist")
        if current[0] != SyncStatus.RUNNING.value or run.status.is_terminal:
            raise InvalidTransition(
                f"Sync run {run.id} is already {current[0]}; cannot move to {status.value}"
            )

        errors = errors or {}
        error_details = (
            "\n".join(f"{name}: {text}" for name, text in sorted(errors.items()))
            if errors
            else None
        )
        end_time = utc_now()
        self.con.execute(
            """
            UPDATE sync_runs
            SET
                end_time = ?,
                status = ?,
                records_processed = ?,
                errors_count = ?,
                error_details = ?
            WHERE id = ? AND status = 'running'
            """,
            [
                end_time,
                status.value,
                json.dumps(records_processed, sort_keys=True),
                len(errors),
                error_details,
                run.id,
            ],
        )

        run.status = status
        run.end_time = end_time
        run.records_processed = dict(records_processed)
        run.errors_count = len(errors)
        run.error_details = error_details

        log = self.logger.info if status is SyncStatus.COMPLETED else self.logger.error
        log(
            f"Sync run {run.id} for {run.sync_date} finished: status={status.value}, "
            f"records={records_processed}, errors={len(errors)}"
        )
        return run

    def get(self, run_id: int) -> Optional[SyncRun]:
        row = self.con.execute(
            """
            SELECT id, sync_date, start_time, status, end_time,
                   records_processed, errors_count, error_details
            FROM sync_runs
            WHERE id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            return None
        records = row[5]
        if isinstance(records, str):
            records = json.loads(records)
        return SyncRun(
            id=row[0],
            sync_date=row[1],
            start_time=row[2],
            status=SyncStatus(row[3]),
            end_time=row[4],
            records_processed=records or {},
            errors_count=row[6],
            error_details=row[7],
        )

    def latest(self, sync_date: date) -> Optional[SyncRun]:
        row = self.con.execute(
            "SELECT id FROM sync_runs WHERE sync_date = ? ORDER BY id DESC LIMIT 1",
            [sync_date],
        ).fetchone()
        return self.get(row[0]) if row else None

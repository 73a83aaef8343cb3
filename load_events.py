import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Dict, Iterator, List, Sequence, Tuple

import duckdb

from extract_events import ExtractionResult

DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class UpsertSpec:
    """How one dataset is written: target table, columns, conflict key and policy."""

    table: str
    columns: Tuple[str, ...]
    conflict_key: Tuple[str, ...]
    overwrite: bool

    def insert_sql(self) -> str:
        cols = ", ".join(self.columns)
        placeholders = ", ".join(["?"] * len(self.columns))
        key = ", ".join(self.conflict_key)
        if self.overwrite:
            updates = ",\n                ".join(
                f"{c} = EXCLUDED.{c}" for c in self.columns if c not in self.conflict_key
            )
            action = f"DO UPDATE SET\n                {updates}"
        else:
            action = "DO NOTHING"
        return f"""
            INSERT INTO {self.table} ({cols})
            VALUES ({placeholders})
            ON CONFLICT ({key}) {action}
        """


DATASET_SPECS: Dict[str, UpsertSpec] = {
    # Latest full-day aggregate wins
    "sessions": UpsertSpec(
        table="sessions",
        columns=(
            "session_id",
            "visitor_id",
            "ga_session_id",
            "first_seen_at",
            "last_seen_at",
            "duration_seconds",
            "country",
            "city",
            "country_iso2",
            "country_iso3",
            "language",
            "device_category",
            "os",
            "browser",
            "referrer",
            "is_returning",
            "total_events",
            "total_pageviews",
            "sync_date",
        ),
        conflict_key=("session_id",),
        overwrite=True,
    ),
    # Immutable facts - first write wins
    "pageviews": UpsertSpec(
        table="pageviews",
        columns=(
            "event_timestamp",
            "visitor_id",
            "page_path",
            "session_id",
            "page_title",
            "referrer",
            "locale",
            "sync_date",
        ),
        conflict_key=("event_timestamp", "visitor_id", "page_path"),
        overwrite=False,
    ),
    "video_events": UpsertSpec(
        table="video_events",
        columns=(
            "event_timestamp",
            "visitor_id",
            "event_name",
            "video_id",
            "session_id",
            "video_title",
            "gallery",
            "player",
            "locale",
            "current_time_seconds",
            "progress_percent",
            "watch_time_seconds",
            "sync_date",
        ),
        conflict_key=("event_timestamp", "visitor_id", "event_name", "video_id"),
        overwrite=False,
    ),
    "cta_clicks": UpsertSpec(
        table="cta_clicks",
        columns=(
            "event_timestamp",
            "visitor_id",
            "cta_id",
            "session_id",
            "page_path",
            "locale",
            "sync_date",
        ),
        conflict_key=("event_timestamp", "visitor_id", "cta_id"),
        overwrite=False,
    ),
}


class LoadError(Exception):
    """A batch failed; the dataset's remaining batches were not attempted."""

    def __init__(self, dataset: str, rows_loaded: int, cause: Exception):
        super().__init__(
            f"Load of {dataset} failed after {rows_loaded} rows: {type(cause).__name__}: {cause}"
        )
        self.dataset = dataset
        self.rows_loaded = rows_loaded
        self.cause = cause


def to_rows(spec: UpsertSpec, records: Sequence, sync_date: date) -> List[tuple]:
    """
    Turn typed records into parameter tuples in UpsertSpec column order.
    Duplicates on the conflict key keep their first occurrence.
    """
    seen = set()
    rows = []
    for record in records:
        values = asdict(record)
        values["sync_date"] = sync_date
        key = tuple(values[c] for c in spec.conflict_key)
        if key in seen:
            continue
        seen.add(key)
        rows.append(tuple(values[c] for c in spec.columns))
    return rows


def chunked(rows: List[tuple], size: int) -> Iterator[List[tuple]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def upsert_dataset(
    con: duckdb.DuckDBPyConnection,
    dataset: str,
    records: Sequence,
    sync_date: date,
    logger: logging.Logger,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """
    Upsert one dataset in sequential batches, one transaction per batch.
    Returns rows written; raises LoadError on the first failing batch.
    """
    spec = DATASET_SPECS[dataset]
    rows = to_rows(spec, records, sync_date)
    if not rows:
        logger.info(f"No {dataset} rows to load.")
        return 0

    sql = spec.insert_sql()
    loaded = 0
    for batch_no, batch in enumerate(chunked(rows, batch_size), start=1):
        try:
            con.begin()
            con.executemany(sql, batch)
            con.commit()
        except Exception as e:
            try:
                con.rollback()
            except duckdb.Error as rollback_err:
                logger.error(f"Rollback also failed: {rollback_err}")
            logger.error(
                f"Batch {batch_no} of {dataset} failed ({len(batch)} rows); "
                f"skipping remaining batches: {e}"
            )
            raise LoadError(dataset, loaded, e) from e
        loaded += len(batch)
        logger.info(f"Upserted {dataset} batch {batch_no}: rows={len(batch)}")

    logger.info(f"Loaded {dataset}: rows={loaded}")
    return loaded


def load_all(
    con: duckdb.DuckDBPyConnection,
    extraction: ExtractionResult,
    logger: logging.Logger,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Tuple[Dict[str, int], Dict[str, str]]:
    """
    Load every dataset independently.
    Returns (rows written per dataset, error text per failed dataset).
    """
    counts: Dict[str, int] = {}
    errors: Dict[str, str] = {}
    for dataset, records in extraction.datasets().items():
        try:
            counts[dataset] = upsert_dataset(
                con, dataset, records, extraction.sync_date, logger, batch_size
            )
        except LoadError as e:
            counts[dataset] = e.rows_loaded
            errors[dataset] = str(e)
    return counts, errors

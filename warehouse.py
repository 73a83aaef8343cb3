"""
Read-only access to the raw event warehouse.

The warehouse is a DuckDB database holding one table per calendar day in GA4
export shape (events_YYYYMMDD). Each sync run reads exactly one of them.
"""
import logging
import os
from datetime import date
from typing import Dict, List, Optional, Sequence

import duckdb

PARAM_STRUCT = (
    "STRUCT(key VARCHAR, value STRUCT("
    "string_value VARCHAR, int_value BIGINT, float_value DOUBLE, double_value DOUBLE))"
)

# Column types of a daily export partition (GA4 BigQuery export subset)
EXPORT_COLUMNS: Dict[str, str] = {
    "event_date": "VARCHAR",
    "event_timestamp": "BIGINT",
    "event_name": "VARCHAR",
    "event_params": f"{PARAM_STRUCT}[]",
    "user_pseudo_id": "VARCHAR",
    "user_properties": f"{PARAM_STRUCT}[]",
    "device": (
        "STRUCT(category VARCHAR, operating_system VARCHAR, language VARCHAR, "
        "web_info STRUCT(browser VARCHAR))"
    ),
    "geo": "STRUCT(country VARCHAR, city VARCHAR)",
    "traffic_source": "STRUCT(source VARCHAR, medium VARCHAR)",
}

REQUIRED_COLUMNS = ("event_timestamp", "event_name", "user_pseudo_id", "event_params")
OPTIONAL_COLUMNS = ("user_properties", "device", "geo", "traffic_source")


class ExtractionError(Exception):
    """A day's source partition cannot be read; fatal to that day's run only."""


class PartitionNotFoundError(ExtractionError):
    pass


class MalformedPartitionError(ExtractionError):
    pass


def partition_table_name(sync_date: date, table_prefix: str = "events_") -> str:
    return f"{table_prefix}{sync_date.strftime('%Y%m%d')}"


def connect_warehouse(db_path: str) -> duckdb.DuckDBPyConnection:
    """Open the warehouse read-only; the pipeline never writes upstream."""
    if not os.path.exists(db_path):
        raise ExtractionError(f"Warehouse database not found: {db_path}")
    return duckdb.connect(database=db_path, read_only=True)


def partition_columns(con: duckdb.DuckDBPyConnection, table: str) -> List[str]:
    """Column names of a partition table; raises PartitionNotFoundError if absent."""
    rows = con.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = ?
        ORDER BY ordinal_position
        """,
        [table],
    ).fetchall()
    if not rows:
        raise PartitionNotFoundError(f"Warehouse partition {table} not found")
    return [r[0] for r in rows]


def check_partition(con: duckdb.DuckDBPyConnection, table: str) -> List[str]:
    """Validate that a partition exists and carries the required columns."""
    columns = partition_columns(con, table)
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise MalformedPartitionError(
            f"Warehouse partition {table} is missing required columns: {missing}"
        )
    return columns


def fetch_partition_events(
    con: duckdb.DuckDBPyConnection,
    table: str,
    event_names: Optional[Sequence[str]] = None,
) -> List[dict]:
    """
    Read raw events from one partition, ordered chronologically.

    Ties on event_timestamp keep the partition's storage order (rowid), which
    is what session tie-breaks rely on. Rows without user_pseudo_id are skipped.
    """
    columns = check_partition(con, table)

    select_optional = ",\n            ".join(
        f"{c}" if c in columns else f"NULL AS {c}" for c in OPTIONAL_COLUMNS
    )
    where = ["user_pseudo_id IS NOT NULL", "event_timestamp IS NOT NULL"]
    params: list = []
    if event_names:
        where.append(f"event_name IN ({', '.join(['?'] * len(event_names))})")
        params.extend(event_names)

    query = f"""
        SELECT
            rowid AS source_order,
            event_timestamp,
            event_name,
            user_pseudo_id,
            event_params,
            {select_optional}
        FROM "{table}"
        WHERE {' AND '.join(where)}
        ORDER BY event_timestamp, source_order
    """
    try:
        cursor = con.execute(query, params)
        names = [d[0] for d in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]
    except duckdb.Error as e:
        raise MalformedPartitionError(
            f"Warehouse partition {table} could not be read: {e}"
        ) from e


def _columns_literal() -> str:
    return "{" + ", ".join(f"'{k}': '{v}'" for k, v in EXPORT_COLUMNS.items()) + "}"


def import_partition_from_json(
    con: duckdb.DuckDBPyConnection,
    json_path: str,
    sync_date: date,
    table_prefix: str = "events_",
    replace: bool = False,
) -> int:
    """
    Create a day's partition table from a newline-delimited JSON export.

    Existing partitions are left untouched unless replace=True, since
    partitions are closed once written.
    """
    table = partition_table_name(sync_date, table_prefix)
    if not os.path.exists(json_path):
        raise FileNotFoundError(f"Export file not found: {json_path}")

    verb = "CREATE OR REPLACE TABLE" if replace else "CREATE TABLE"
    safe_path = json_path.replace("'", "''")
    con.execute(
        f"""
        {verb} "{table}" AS
        SELECT *
        FROM read_json(
            '{safe_path}',
            format = 'newline_delimited',
            columns = {_columns_literal()}
        )
        """
    )
    count = con.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
    logging.info(f"Imported {count} events from {json_path} into {table}")
    return count


if __name__ == "__main__":
    import argparse
    from datetime import datetime

    parser = argparse.ArgumentParser(
        description="Import a daily newline-delimited JSON export into the warehouse"
    )
    parser.add_argument("export_file", help="Path to the events_YYYYMMDD JSONL export")
    parser.add_argument("--date", required=True, help="Partition date (YYYY-MM-DD)")
    parser.add_argument("--warehouse", required=True, help="Warehouse DuckDB file")
    parser.add_argument("--prefix", default="events_", help="Partition table prefix")
    parser.add_argument(
        "--replace", action="store_true", help="Replace an existing partition"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    day = datetime.strptime(args.date, "%Y-%m-%d").date()
    wh = duckdb.connect(database=args.warehouse, read_only=False)
    try:
        import_partition_from_json(wh, args.export_file, day, args.prefix, args.replace)
    finally:
        wh.close()

# tests/conftest.py
import json
import logging
from datetime import date, datetime, timezone

import duckdb
import pytest

from setup_database import setup_database
from warehouse import import_partition_from_json

SYNC_DATE = date(2025, 1, 15)


def _param(key, value):
    """GA4 event_params entry with the value in the slot matching its type."""
    slot = {"string_value": None, "int_value": None, "float_value": None, "double_value": None}
    if isinstance(value, bool) or isinstance(value, int):
        slot["int_value"] = int(value)
    elif isinstance(value, float):
        slot["double_value"] = value
    else:
        slot["string_value"] = value
    return {"key": key, "value": slot}


def _evt(
    name,
    ts,
    user="visitor_a",
    ga_session_id=1001,
    params=None,
    user_properties=None,
    country="France",
    city="Paris",
    language="fr-fr",
    category="desktop",
    os_name="Windows",
    browser="Chrome",
    source="google",
):
    """Create one raw event row in daily export (JSONL) shape."""
    all_params = {}
    if ga_session_id is not None:
        all_params["ga_session_id"] = ga_session_id
    all_params.update(params or {})
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return {
        "event_date": ts.strftime("%Y%m%d"),
        "event_timestamp": int(ts.timestamp() * 1_000_000),
        "event_name": name,
        "event_params": [_param(k, v) for k, v in all_params.items()],
        "user_pseudo_id": user,
        "user_properties": [_param(k, v) for k, v in (user_properties or {}).items()],
        "device": {
            "category": category,
            "operating_system": os_name,
            "language": language,
            "web_info": {"browser": browser},
        },
        "geo": {"country": country, "city": city},
        "traffic_source": {"source": source, "medium": "organic"},
    }


@pytest.fixture()
def ga4_event():
    return _evt


@pytest.fixture()
def logger():
    return logging.getLogger("test")


@pytest.fixture()
def warehouse(tmp_path):
    con = duckdb.connect(str(tmp_path / "warehouse.db"), read_only=False)
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def add_partition(warehouse, tmp_path):
    """Write event rows as a JSONL export and import them as one day's partition."""

    def _add(rows, sync_date=SYNC_DATE, prefix="events_"):
        path = tmp_path / f"{prefix}{sync_date.strftime('%Y%m%d')}.jsonl"
        with open(path, "w") as f:
            for row in rows:
                f.write(json.dumps(row) + "\n")
        return import_partition_from_json(
            warehouse, str(path), sync_date, prefix, replace=True
        )

    return _add


@pytest.fixture()
def store(tmp_path):
    con = duckdb.connect(str(tmp_path / "analytics.db"), read_only=False)
    setup_database(con)
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def base_ts():
    return datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

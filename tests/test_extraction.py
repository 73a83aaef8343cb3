# tests/test_extraction.py
"""
Extraction from one daily partition: session reconstruction and tie-breaks,
per-dataset projection, data-quality drops, and unreadable partitions.
"""
from datetime import date, datetime, timedelta

import pytest

from extract_events import extract_day, page_path_from_location, params_to_dict
from warehouse import MalformedPartitionError, PartitionNotFoundError

SYNC_DATE = date(2025, 1, 15)


def _day(ga4_event, base_ts):
    return [
        ga4_event("first_visit", base_ts, user="visitor_a"),
        ga4_event(
            "page_view",
            base_ts,
            user="visitor_a",
            params={"page_location": "https://example.com/galleries?x=1", "page_title": "Galleries"},
        ),
        ga4_event(
            "video_start",
            base_ts + timedelta(minutes=5),
            user="visitor_a",
            params={"video_id": "v1", "video_title": "Intro", "progress_percent": 0},
        ),
        ga4_event(
            "cta_click",
            base_ts + timedelta(minutes=10),
            user="visitor_a",
            params={"cta_id": "book", "page_path": "/galleries"},
        ),
        # Returning visitor, no first_visit in this session
        ga4_event(
            "page_view",
            base_ts + timedelta(hours=1),
            user="visitor_b",
            ga_session_id=2002,
            country="USA",
            language="en-us",
            params={"page_path": "/"},
        ),
    ]


def test_sessions_are_reconstructed(warehouse, add_partition, ga4_event, base_ts, logger):
    add_partition(_day(ga4_event, base_ts))
    result = extract_day(warehouse, SYNC_DATE, "events_", logger)

    sessions = {s.session_id: s for s in result.sessions}
    assert set(sessions) == {"visitor_a_1001", "visitor_b_2002"}

    a = sessions["visitor_a_1001"]
    assert a.first_seen_at == datetime(2025, 1, 15, 9, 0)
    assert a.last_seen_at == datetime(2025, 1, 15, 9, 10)
    assert a.duration_seconds == 600
    assert a.total_events == 4
    assert a.total_pageviews == 1
    assert a.is_returning is False
    assert a.country == "France"
    assert a.language == "fr-fr"
    assert a.device_category == "desktop"
    assert a.browser == "Chrome"

    b = sessions["visitor_b_2002"]
    assert b.is_returning is True
    assert b.country == "USA"


def test_first_value_ties_follow_source_order(
    warehouse, add_partition, ga4_event, base_ts, logger
):
    rows = [
        ga4_event("page_view", base_ts, user="visitor_c", ga_session_id=3003, country=None, city=None,
                  params={"page_path": "/a"}),
        ga4_event("page_view", base_ts, user="visitor_c", ga_session_id=3003, country="Germany",
                  city="Berlin", params={"page_path": "/b"}),
        ga4_event("page_view", base_ts, user="visitor_c", ga_session_id=3003, country="Austria",
                  city="Vienna", params={"page_path": "/c"}),
    ]
    add_partition(rows)
    result = extract_day(warehouse, SYNC_DATE, "events_", logger)

    (session,) = result.sessions
    assert session.country == "Germany"
    assert session.city == "Berlin"
    assert session.duration_seconds == 0


def test_projections_and_page_paths(warehouse, add_partition, ga4_event, base_ts, logger):
    add_partition(_day(ga4_event, base_ts))
    result = extract_day(warehouse, SYNC_DATE, "events_", logger)

    paths = sorted(p.page_path for p in result.pageviews)
    assert paths == ["/", "/galleries?x=1"]

    (video,) = result.video_events
    assert video.event_name == "video_start"
    assert video.video_id == "v1"
    assert video.session_id == "visitor_a_1001"
    assert video.locale == "fr-fr"

    (click,) = result.cta_clicks
    assert click.cta_id == "book"
    assert click.page_path == "/galleries"


def test_rows_missing_entity_ids_are_dropped_and_counted(
    warehouse, add_partition, ga4_event, base_ts, logger
):
    rows = _day(ga4_event, base_ts) + [
        ga4_event("video_progress", base_ts + timedelta(minutes=6), user="visitor_a",
                  params={"progress_percent": 25}),
        ga4_event("cta_click", base_ts + timedelta(minutes=7), user="visitor_a"),
        ga4_event("cta_click", base_ts + timedelta(minutes=8), user="visitor_a"),
    ]
    add_partition(rows)
    result = extract_day(warehouse, SYNC_DATE, "events_", logger)

    assert result.dropped == {"video_events": 1, "cta_clicks": 2}
    assert len(result.video_events) == 1
    assert len(result.cta_clicks) == 1


def test_events_without_session_id_skip_sessions_only(
    warehouse, add_partition, ga4_event, base_ts, logger
):
    rows = [
        ga4_event("page_view", base_ts, user="visitor_d", ga_session_id=None,
                  params={"page_path": "/orphan"}),
    ]
    add_partition(rows)
    result = extract_day(warehouse, SYNC_DATE, "events_", logger)

    assert result.sessions == []
    (pv,) = result.pageviews
    assert pv.session_id is None
    assert pv.page_path == "/orphan"


def test_missing_partition_raises(warehouse, logger):
    with pytest.raises(PartitionNotFoundError):
        extract_day(warehouse, SYNC_DATE, "events_", logger)


def test_malformed_partition_raises(warehouse, logger):
    warehouse.execute(
        "CREATE TABLE events_20250115 (event_timestamp BIGINT, event_name VARCHAR)"
    )
    with pytest.raises(MalformedPartitionError):
        extract_day(warehouse, SYNC_DATE, "events_", logger)


def test_params_to_dict_takes_first_populated_slot():
    params = [
        {"key": "a", "value": {"string_value": None, "int_value": 5}},
        {"key": "b", "value": {"string_value": "(not set)", "double_value": 1.5}},
        {"key": "a", "value": {"string_value": "later"}},
    ]
    assert params_to_dict(params) == {"a": 5, "b": 1.5}


@pytest.mark.parametrize(
    "location, expected",
    [
        ("https://example.com/fr/gallery", "/fr/gallery"),
        ("https://example.com", "/"),
        ("https://example.com/p?id=3", "/p?id=3"),
        ("/already/relative", "/already/relative"),
        (None, None),
    ],
)
def test_page_path_from_location(location, expected):
    assert page_path_from_location(location) == expected

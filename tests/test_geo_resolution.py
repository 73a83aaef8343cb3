# tests/test_geo_resolution.py
import logging
from datetime import datetime

import pytest

from extract_events import Session
from geo import (
    Resolved,
    Unresolved,
    enrich_sessions_geo,
    resolve_country,
    resolve_country_codes,
)


def _session(sid, country):
    ts = datetime(2025, 1, 15, 9, 0)
    return Session(
        session_id=sid,
        visitor_id="v",
        ga_session_id=1,
        first_seen_at=ts,
        last_seen_at=ts,
        country=country,
        city=None,
        language=None,
        device_category=None,
        os=None,
        browser=None,
        referrer=None,
        is_returning=False,
        total_events=1,
        total_pageviews=0,
        duration_seconds=0,
    )


@pytest.mark.parametrize(
    "name, expected",
    [
        ("France", ("FR", "FRA")),
        ("USA", ("US", "USA")),
        ("usa", ("US", "USA")),
        ("  United States  ", ("US", "USA")),
        ("United Kingdom", ("GB", "GBR")),
        ("UK", ("GB", "GBR")),
        ("South Korea", ("KR", "KOR")),
        ("Russia", ("RU", "RUS")),
        ("Vietnam", ("VN", "VNM")),
        ("Czech Republic", ("CZ", "CZE")),
        ("germany", ("DE", "DEU")),
    ],
)
def test_known_names_resolve(name, expected):
    assert resolve_country_codes(name) == expected
    assert isinstance(resolve_country(name), Resolved)


@pytest.mark.parametrize("name", ["Atlantis", "Narnia"])
def test_unknown_names_stay_unresolved(name):
    result = resolve_country(name)
    assert isinstance(result, Unresolved)
    assert result.raw == name
    assert not result.is_placeholder
    assert resolve_country_codes(name) == (None, None)


@pytest.mark.parametrize("name", [None, "", "(not set)", "Unknown"])
def test_placeholders_are_not_countries(name):
    result = resolve_country(name)
    assert isinstance(result, Unresolved)
    assert result.is_placeholder


def test_resolution_is_deterministic():
    assert resolve_country("Ivory Coast") == resolve_country("Ivory Coast")
    assert resolve_country_codes("Ivory Coast") == ("CI", "CIV")


def test_enrich_sets_codes_and_counts_misses(caplog):
    sessions = [
        _session("a", "France"),
        _session("b", "Atlantis"),
        _session("c", "Atlantis"),
        _session("d", None),
    ]
    with caplog.at_level(logging.WARNING):
        misses = enrich_sessions_geo(sessions, logging.getLogger("test"))

    assert misses == 2
    assert (sessions[0].country_iso2, sessions[0].country_iso3) == ("FR", "FRA")
    assert sessions[1].country_iso2 is None and sessions[1].country_iso3 is None
    assert sessions[3].country_iso2 is None

    # One warning per distinct unresolved name
    warnings = [r for r in caplog.records if "Unresolved country" in r.getMessage()]
    assert len(warnings) == 1
    assert "Atlantis" in warnings[0].getMessage()

"""
Report queries over the analytics store.

Every function takes a ReportRequest built by report_params and returns a
JSON-serialisable dict, so results can go straight into the report cache.
Timestamps in the store are naive UTC; windows are converted with
DateWindow.to_utc_bounds() in the business timezone.
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import duckdb
import pandas as pd

from filters import ALL, DEFAULT_TIMEZONE, DateWindow
from report_params import ReportRequest

logger = logging.getLogger(__name__)

VIDEO_START = "video_start"
VIDEO_PROGRESS = "video_progress"
VIDEO_COMPLETE = "video_complete"
FUNNEL_MILESTONES = (25, 50, 75)
TOP_VIDEOS_LIMIT = 10


# --- Filter clauses ---------------------------------------------------------------


def _where(
    request: ReportRequest,
    window: DateWindow,
    tz_name: str,
    ts_col: str,
    lang_col: str,
    country_col: Optional[str] = None,
    video_col: Optional[str] = None,
) -> Tuple[str, List[Any]]:
    """
    WHERE clause + params for one table. Language is a prefix match
    ('fr' matches 'fr-FR'); country goes through the session's ISO code
    unless the table carries country_iso2 itself.
    """
    lower, upper = window.to_utc_bounds(tz_name)
    clauses = [f"{ts_col} >= ?", f"{ts_col} < ?"]
    params: List[Any] = [lower, upper]

    state = request.filters
    if state.language != ALL:
        clauses.append(f"starts_with(lower({lang_col}), ?)")
        params.append(state.language)
    if state.country != ALL:
        if country_col:
            clauses.append(f"{country_col} = ?")
        else:
            clauses.append(
                "session_id IN (SELECT session_id FROM sessions WHERE country_iso2 = ?)"
            )
        params.append(state.country)
    if video_col and state.video_id != ALL:
        clauses.append(f"{video_col} = ?")
        params.append(state.video_id)

    return " AND ".join(clauses), params


def _scalar(con: duckdb.DuckDBPyConnection, sql: str, params: List[Any]) -> Any:
    return con.execute(sql, params).fetchone()[0]


def _pct_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if not previous or current is None:
        return None
    return round((current - previous) / previous * 100, 1)


# --- kpis ---------------------------------------------------------------------------


def _kpi_metrics(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, window: DateWindow, tz_name: str
) -> Dict[str, Any]:
    where, params = _where(
        request, window, tz_name, "first_seen_at", "language", country_col="country_iso2"
    )
    sessions, visitors, avg_duration, returning = con.execute(
        f"""
        SELECT
            COUNT(*),
            COUNT(DISTINCT visitor_id),
            AVG(duration_seconds),
            SUM(CASE WHEN is_returning THEN 1 ELSE 0 END)
        FROM sessions
        WHERE {where}
        """,
        params,
    ).fetchone()

    where, params = _where(request, window, tz_name, "event_timestamp", "locale")
    pageviews = _scalar(con, f"SELECT COUNT(*) FROM pageviews WHERE {where}", params)

    where, params = _where(
        request, window, tz_name, "event_timestamp", "locale", video_col="video_id"
    )
    video_starts, video_completes = con.execute(
        f"""
        SELECT
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_START}'),
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_COMPLETE}')
        FROM video_events
        WHERE {where}
        """,
        params,
    ).fetchone()

    where, params = _where(request, window, tz_name, "event_timestamp", "locale")
    cta_clicks = _scalar(con, f"SELECT COUNT(*) FROM cta_clicks WHERE {where}", params)

    return {
        "sessions": sessions,
        "unique_visitors": visitors,
        "pageviews": pageviews,
        "avg_session_duration": round(float(avg_duration), 1) if avg_duration is not None else 0.0,
        "returning_share": round((returning or 0) / sessions, 4) if sessions else 0.0,
        "video_starts": video_starts,
        "video_completes": video_completes,
        "cta_clicks": cta_clicks,
    }


def kpis_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    """Headline metrics for the window, the previous equal-length period, and % change."""
    current = _kpi_metrics(con, request, request.window, tz_name)
    previous = _kpi_metrics(con, request, request.previous_window, tz_name)
    return {
        "window": request.window.as_params(),
        "previous_window": request.previous_window.as_params(),
        "current": current,
        "previous": previous,
        "change_pct": {k: _pct_change(current[k], previous[k]) for k in current},
    }


# --- top-videos / video-funnel --------------------------------------------------------


def top_videos_report(
    con: duckdb.DuckDBPyConnection,
    request: ReportRequest,
    tz_name: str = DEFAULT_TIMEZONE,
    limit: int = TOP_VIDEOS_LIMIT,
) -> Dict[str, Any]:
    where, params = _where(
        request, request.window, tz_name, "event_timestamp", "locale", video_col="video_id"
    )
    rows = con.execute(
        f"""
        SELECT
            video_id,
            MAX(video_title) AS video_title,
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_START}') AS starts,
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_COMPLETE}') AS completes,
            COALESCE(SUM(watch_time_seconds), 0) AS watch_time_seconds
        FROM video_events
        WHERE {where}
        GROUP BY video_id
        ORDER BY starts DESC, video_id
        LIMIT ?
        """,
        params + [limit],
    ).fetchall()
    return {
        "window": request.window.as_params(),
        "videos": [
            {
                "video_id": video_id,
                "video_title": title,
                "starts": starts,
                "completes": completes,
                "completion_rate": round(completes / starts, 4) if starts else 0.0,
                "watch_time_seconds": float(watch_time),
            }
            for video_id, title, starts, completes, watch_time in rows
        ],
    }


def video_funnel_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    """start -> 25/50/75 % progress milestones -> complete, for one video or all."""
    where, params = _where(
        request, request.window, tz_name, "event_timestamp", "locale", video_col="video_id"
    )
    milestone_cols = ",\n            ".join(
        f"COUNT(*) FILTER (WHERE event_name = '{VIDEO_PROGRESS}' AND progress_percent = {pct})"
        for pct in FUNNEL_MILESTONES
    )
    row = con.execute(
        f"""
        SELECT
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_START}'),
            {milestone_cols},
            COUNT(*) FILTER (WHERE event_name = '{VIDEO_COMPLETE}')
        FROM video_events
        WHERE {where}
        """,
        params,
    ).fetchone()

    labels = ["start"] + [f"progress_{pct}" for pct in FUNNEL_MILESTONES] + ["complete"]
    starts = row[0]
    return {
        "window": request.window.as_params(),
        "video_id": request.filters.video_id,
        "steps": [
            {
                "step": label,
                "count": count,
                "share_of_starts": round(count / starts, 4) if starts else 0.0,
            }
            for label, count in zip(labels, row)
        ],
    }


# --- geo / cta ----------------------------------------------------------------------


def geo_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    where, params = _where(
        request, request.window, tz_name, "first_seen_at", "language", country_col="country_iso2"
    )
    rows = con.execute(
        f"""
        SELECT
            country_iso2,
            MAX(country_iso3) AS country_iso3,
            COUNT(*) AS sessions,
            COUNT(DISTINCT visitor_id) AS visitors
        FROM sessions
        WHERE {where}
        GROUP BY country_iso2
        ORDER BY sessions DESC, country_iso2 NULLS LAST
        """,
        params,
    ).fetchall()
    return {
        "window": request.window.as_params(),
        "countries": [
            {"country_iso2": iso2, "country_iso3": iso3, "sessions": s, "visitors": v}
            for iso2, iso3, s, v in rows
        ],
    }


def cta_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    where, params = _where(request, request.window, tz_name, "event_timestamp", "locale")
    rows = con.execute(
        f"""
        SELECT cta_id, COUNT(*) AS clicks, COUNT(DISTINCT visitor_id) AS visitors
        FROM cta_clicks
        WHERE {where}
        GROUP BY cta_id
        ORDER BY clicks DESC, cta_id
        """,
        params,
    ).fetchall()
    return {
        "window": request.window.as_params(),
        "ctas": [{"cta_id": c, "clicks": n, "visitors": v} for c, n, v in rows],
    }


# --- trends -------------------------------------------------------------------------


def _daily_counts(timestamps: pd.Series, tz_name: str) -> pd.Series:
    """Bucket naive-UTC timestamps into business-timezone calendar dates."""
    if timestamps.empty:
        return pd.Series(dtype="int64")
    local = pd.to_datetime(timestamps).dt.tz_localize("UTC").dt.tz_convert(tz_name)
    return local.dt.date.value_counts()


def trends_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    """One point per business day in the window; days without data are zero."""
    window = request.window

    where, params = _where(
        request, window, tz_name, "first_seen_at", "language", country_col="country_iso2"
    )
    sessions = con.execute(
        f"SELECT first_seen_at AS ts FROM sessions WHERE {where}", params
    ).df()["ts"]

    where, params = _where(request, window, tz_name, "event_timestamp", "locale")
    pageviews = con.execute(
        f"SELECT event_timestamp AS ts FROM pageviews WHERE {where}", params
    ).df()["ts"]

    where, params = _where(
        request, window, tz_name, "event_timestamp", "locale", video_col="video_id"
    )
    starts = con.execute(
        f"SELECT event_timestamp AS ts FROM video_events WHERE {where} AND event_name = ?",
        params + [VIDEO_START],
    ).df()["ts"]

    series = {
        "sessions": _daily_counts(sessions, tz_name),
        "pageviews": _daily_counts(pageviews, tz_name),
        "video_starts": _daily_counts(starts, tz_name),
    }
    points = []
    for offset in range(window.days):
        day = window.start + timedelta(days=offset)
        point = {"date": day.isoformat()}
        for name, counts in series.items():
            point[name] = int(counts.get(day, 0))
        points.append(point)
    return {"window": window.as_params(), "points": points}


REPORTS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "kpis": kpis_report,
    "top-videos": top_videos_report,
    "video-funnel": video_funnel_report,
    "geo": geo_report,
    "trends": trends_report,
    "cta": cta_report,
}


def run_report(
    con: duckdb.DuckDBPyConnection, request: ReportRequest, tz_name: str = DEFAULT_TIMEZONE
) -> Dict[str, Any]:
    logger.info(f"Running {request.report_type} report: {request.params}")
    result = REPORTS[request.report_type](con, request, tz_name)
    if request.warnings:
        result["warnings"] = list(request.warnings)
    return result

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pandas as pd

from warehouse import fetch_partition_events, partition_table_name

PAGEVIEW_EVENT = "page_view"
CTA_EVENT = "cta_click"
FIRST_VISIT_EVENT = "first_visit"
VIDEO_EVENTS = ("video_start", "video_pause", "video_progress", "video_complete")

# GA4 param value slots, tried in this order
VALUE_SLOTS = ("string_value", "int_value", "double_value", "float_value")


# --- Typed records ---------------------------------------------------------------


@dataclass
class Session:
    session_id: str
    visitor_id: str
    ga_session_id: int
    first_seen_at: datetime
    last_seen_at: datetime
    country: Optional[str]
    city: Optional[str]
    language: Optional[str]
    device_category: Optional[str]
    os: Optional[str]
    browser: Optional[str]
    referrer: Optional[str]
    is_returning: bool
    total_events: int
    total_pageviews: int
    duration_seconds: int
    country_iso2: Optional[str] = None
    country_iso3: Optional[str] = None


@dataclass(frozen=True)
class Pageview:
    event_timestamp: datetime
    session_id: Optional[str]
    visitor_id: str
    page_path: str
    page_title: Optional[str]
    referrer: Optional[str]
    locale: Optional[str]


@dataclass(frozen=True)
class VideoEvent:
    event_name: str
    event_timestamp: datetime
    session_id: Optional[str]
    visitor_id: str
    video_id: str
    video_title: Optional[str]
    gallery: Optional[str]
    player: Optional[str]
    locale: Optional[str]
    current_time_seconds: Optional[float]
    progress_percent: Optional[int]
    watch_time_seconds: Optional[float]


@dataclass(frozen=True)
class CtaClick:
    event_timestamp: datetime
    session_id: Optional[str]
    visitor_id: str
    page_path: Optional[str]
    cta_id: str
    locale: Optional[str]


@dataclass
class ExtractionResult:
    sync_date: date
    sessions: List[Session] = field(default_factory=list)
    pageviews: List[Pageview] = field(default_factory=list)
    video_events: List[VideoEvent] = field(default_factory=list)
    cta_clicks: List[CtaClick] = field(default_factory=list)
    dropped: Dict[str, int] = field(default_factory=dict)

    def datasets(self) -> Dict[str, list]:
        return {
            "sessions": self.sessions,
            "pageviews": self.pageviews,
            "video_events": self.video_events,
            "cta_clicks": self.cta_clicks,
        }


# --- Param helpers -----------------------------------------------------------------


def params_to_dict(params: Optional[list]) -> Dict[str, Any]:
    """
    Flatten GA4 [{key, value: {string_value, int_value, ...}}] into {key: value}.
    The first populated slot wins; the first occurrence of a key wins.
    """
    flat: Dict[str, Any] = {}
    for param in params or []:
        if not param or param.get("key") is None or param["key"] in flat:
            continue
        value = param.get("value") or {}
        for slot in VALUE_SLOTS:
            v = value.get(slot)
            if v is not None and v not in ("(not set)", "null", ""):
                flat[param["key"]] = v
                break
    return flat


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    number = _float(value)
    if number is None or math.isnan(number):
        return None
    return int(number)


def micros_to_datetime(ts_micros: int) -> datetime:
    """GA4 timestamps are microseconds since epoch, UTC; stored naive UTC."""
    return datetime.fromtimestamp(ts_micros / 1_000_000, tz=timezone.utc).replace(
        tzinfo=None
    )


def page_path_from_location(location: Optional[str]) -> Optional[str]:
    """Strip scheme and host from page_location, keeping path and query."""
    if not location:
        return None
    parts = urlsplit(location)
    if not parts.scheme and not parts.netloc:
        return location
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def session_key(visitor_id: str, ga_session_id: Optional[int]) -> Optional[str]:
    if ga_session_id is None:
        return None
    return f"{visitor_id}_{ga_session_id}"


def _struct_field(struct: Optional[dict], *path: str) -> Any:
    value: Any = struct
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _locale(params: Dict[str, Any], user_props: Dict[str, Any], row: dict) -> Optional[str]:
    return (
        _str(params.get("locale"))
        or _str(user_props.get("language"))
        or _str(_struct_field(row.get("device"), "language"))
    )


def _referrer(params: Dict[str, Any], row: dict) -> Optional[str]:
    return _str(params.get("page_referrer")) or _str(
        _struct_field(row.get("traffic_source"), "source")
    )


# --- Per-event projections ----------------------------------------------------------


def project_pageviews(rows: List[dict]) -> List[Pageview]:
    pageviews = []
    for row in rows:
        if row.get("event_name") != PAGEVIEW_EVENT:
            continue
        params = params_to_dict(row.get("event_params"))
        user_props = params_to_dict(row.get("user_properties"))
        visitor = row["user_pseudo_id"]
        path = _str(params.get("page_path")) or page_path_from_location(
            _str(params.get("page_location"))
        )
        pageviews.append(
            Pageview(
                event_timestamp=micros_to_datetime(row["event_timestamp"]),
                session_id=session_key(visitor, _int(params.get("ga_session_id"))),
                visitor_id=visitor,
                page_path=path or "/",
                page_title=_str(params.get("page_title")),
                referrer=_referrer(params, row),
                locale=_locale(params, user_props, row),
            )
        )
    return pageviews


def project_video_events(rows: List[dict]) -> Tuple[List[VideoEvent], int]:
    """Video engagement rows; rows without a video_id are dropped and counted."""
    events = []
    dropped = 0
    for row in rows:
        if row.get("event_name") not in VIDEO_EVENTS:
            continue
        params = params_to_dict(row.get("event_params"))
        video_id = _str(params.get("video_id"))
        if video_id is None:
            dropped += 1
            continue
        user_props = params_to_dict(row.get("user_properties"))
        visitor = row["user_pseudo_id"]
        events.append(
            VideoEvent(
                event_name=row["event_name"],
                event_timestamp=micros_to_datetime(row["event_timestamp"]),
                session_id=session_key(visitor, _int(params.get("ga_session_id"))),
                visitor_id=visitor,
                video_id=video_id,
                video_title=_str(params.get("video_title")),
                gallery=_str(params.get("gallery")),
                player=_str(params.get("player")),
                locale=_locale(params, user_props, row),
                current_time_seconds=_float(params.get("current_time")),
                progress_percent=_int(params.get("progress_percent")),
                watch_time_seconds=_float(params.get("watch_time_seconds")),
            )
        )
    return events, dropped


def project_cta_clicks(rows: List[dict]) -> Tuple[List[CtaClick], int]:
    """CTA click rows; rows without a cta_id are dropped and counted."""
    clicks = []
    dropped = 0
    for row in rows:
        if row.get("event_name") != CTA_EVENT:
            continue
        params = params_to_dict(row.get("event_params"))
        cta_id = _str(params.get("cta_id"))
        if cta_id is None:
            dropped += 1
            continue
        user_props = params_to_dict(row.get("user_properties"))
        visitor = row["user_pseudo_id"]
        clicks.append(
            CtaClick(
                event_timestamp=micros_to_datetime(row["event_timestamp"]),
                session_id=session_key(visitor, _int(params.get("ga_session_id"))),
                visitor_id=visitor,
                page_path=_str(params.get("page_path"))
                or page_path_from_location(_str(params.get("page_location"))),
                cta_id=cta_id,
                locale=_locale(params, user_props, row),
            )
        )
    return clicks, dropped


# --- Session reconstruction (two-pass group/reduce) -------------------------------

# output column -> (event column, reduction). "first" is the first non-null
# value in chronological order; events are pre-sorted by (timestamp, source_order).
SESSION_REDUCTION: Dict[str, Tuple[str, str]] = {
    "visitor_id": ("visitor_id", "first"),
    "ga_session_id": ("ga_session_id", "first"),
    "first_seen_at": ("event_timestamp", "min"),
    "last_seen_at": ("event_timestamp", "max"),
    "country": ("country", "first"),
    "city": ("city", "first"),
    "language": ("language", "first"),
    "device_category": ("device_category", "first"),
    "os": ("os", "first"),
    "browser": ("browser", "first"),
    "referrer": ("referrer", "first"),
    "total_events": ("event_name", "count"),
    "total_pageviews": ("is_pageview", "sum"),
    "had_first_visit": ("is_first_visit", "any"),
}


def session_events_frame(rows: List[dict]) -> pd.DataFrame:
    """Pass 0: flatten raw rows into one session-attribute record per event."""
    records = []
    for row in rows:
        params = params_to_dict(row.get("event_params"))
        ga_session_id = _int(params.get("ga_session_id"))
        if ga_session_id is None:
            continue
        user_props = params_to_dict(row.get("user_properties"))
        visitor = row["user_pseudo_id"]
        records.append(
            {
                "session_id": session_key(visitor, ga_session_id),
                "visitor_id": visitor,
                "ga_session_id": ga_session_id,
                "event_timestamp": micros_to_datetime(row["event_timestamp"]),
                "source_order": row.get("source_order", 0),
                "event_name": row["event_name"],
                "is_pageview": row["event_name"] == PAGEVIEW_EVENT,
                "is_first_visit": row["event_name"] == FIRST_VISIT_EVENT,
                "country": _str(_struct_field(row.get("geo"), "country")),
                "city": _str(_struct_field(row.get("geo"), "city")),
                "language": _locale(params, user_props, row),
                "device_category": _str(_struct_field(row.get("device"), "category")),
                "os": _str(_struct_field(row.get("device"), "operating_system")),
                "browser": _str(_struct_field(row.get("device"), "web_info", "browser")),
                "referrer": _referrer(params, row),
            }
        )
    return pd.DataFrame(records)


def reconstruct_sessions(events: pd.DataFrame) -> List[Session]:
    """
    Pass 1 groups events by session key; pass 2 reduces each group with
    SESSION_REDUCTION. Sorting is stable so equal timestamps keep source order.
    """
    if events.empty:
        return []

    ordered = events.sort_values(
        ["event_timestamp", "source_order"], kind="mergesort"
    ).reset_index(drop=True)

    grouped = ordered.groupby("session_id", sort=True)
    reduced = grouped.agg(**SESSION_REDUCTION).reset_index()

    sessions = []
    for rec in reduced.to_dict("records"):
        first_seen = pd.Timestamp(rec["first_seen_at"]).to_pydatetime()
        last_seen = pd.Timestamp(rec["last_seen_at"]).to_pydatetime()
        sessions.append(
            Session(
                session_id=rec["session_id"],
                visitor_id=rec["visitor_id"],
                ga_session_id=int(rec["ga_session_id"]),
                first_seen_at=first_seen,
                last_seen_at=last_seen,
                country=_str(rec["country"]),
                city=_str(rec["city"]),
                language=_str(rec["language"]),
                device_category=_str(rec["device_category"]),
                os=_str(rec["os"]),
                browser=_str(rec["browser"]),
                referrer=_str(rec["referrer"]),
                is_returning=not bool(rec["had_first_visit"]),
                total_events=int(rec["total_events"]),
                total_pageviews=int(rec["total_pageviews"]),
                duration_seconds=int((last_seen - first_seen).total_seconds()),
            )
        )
    return sessions


# --- Day extraction -------------------------------------------------------------------


def extract_day(
    con,
    sync_date: date,
    table_prefix: str = "events_",
    logger: logging.Logger = None,
) -> ExtractionResult:
    """
    Reconstruct the four datasets from one closed daily partition.

    Issues four independent read-only queries. Raises ExtractionError
    (PartitionNotFoundError / MalformedPartitionError) if the partition
    cannot be read.
    """
    logger = logger or logging.getLogger(__name__)
    table = partition_table_name(sync_date, table_prefix)
    logger.info(f"Extracting datasets from warehouse partition {table}")

    result = ExtractionResult(sync_date=sync_date)

    session_rows = fetch_partition_events(con, table)
    result.sessions = reconstruct_sessions(session_events_frame(session_rows))
    logger.info(
        f"Sessions: raw_events={len(session_rows)}, sessions={len(result.sessions)}"
    )

    pageview_rows = fetch_partition_events(con, table, [PAGEVIEW_EVENT])
    result.pageviews = project_pageviews(pageview_rows)
    logger.info(f"Pageviews: {len(result.pageviews)}")

    video_rows = fetch_partition_events(con, table, list(VIDEO_EVENTS))
    result.video_events, dropped_video = project_video_events(video_rows)
    logger.info(
        f"Video events: kept={len(result.video_events)}, dropped_missing_video_id={dropped_video}"
    )

    cta_rows = fetch_partition_events(con, table, [CTA_EVENT])
    result.cta_clicks, dropped_cta = project_cta_clicks(cta_rows)
    logger.info(
        f"CTA clicks: kept={len(result.cta_clicks)}, dropped_missing_cta_id={dropped_cta}"
    )

    result.dropped = {
        "video_events": dropped_video,
        "cta_clicks": dropped_cta,
    }
    if dropped_video or dropped_cta:
        logger.warning(
            f"Data-quality drops for {table}: video_events={dropped_video}, cta_clicks={dropped_cta}"
        )
    return result

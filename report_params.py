"""
Single construction point for report requests.

(report type, FilterState) -> canonical request params + cache key. Every
report query and every cache lookup goes through build_report_request();
nothing else assembles params or keys by hand.
"""
import json
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Optional, Tuple

from filters import (
    ALL,
    DEFAULT_TIMEZONE,
    DateWindow,
    FilterState,
    parse_date,
    previous_period,
    resolve_window,
)

REPORT_TYPES = ("kpis", "top-videos", "video-funnel", "geo", "trends", "cta")

REPORT_TYPE_ALIASES = {
    "topVideos": "top-videos",
    "top_videos": "top-videos",
    "videoFunnel": "video-funnel",
    "video_funnel": "video-funnel",
}


class UnknownReportType(ValueError):
    pass


@dataclass(frozen=True)
class ReportRequest:
    report_type: str
    params: Dict[str, str]
    cache_key: str
    window: DateWindow
    previous_window: DateWindow
    filters: FilterState
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def canonical_report_type(report_type: str) -> str:
    name = (report_type or "").strip()
    name = REPORT_TYPE_ALIASES.get(name, name)
    if name not in REPORT_TYPES:
        raise UnknownReportType(
            f"Unknown report type {report_type!r}; expected one of {', '.join(REPORT_TYPES)}"
        )
    return name


def _since_value(state: FilterState) -> Optional[date]:
    if not state.since_enabled:
        return None
    return parse_date(state.since_date)


def build_cache_key(
    report_type: str,
    preset: str,
    window: DateWindow,
    since: Optional[date],
    language: str,
    country: str,
    video_id: str,
) -> str:
    """
    Canonical JSON of every filter dimension, in fixed positions.

    JSON string encoding escapes separators inside values, so distinct
    dimension tuples can never serialise to the same key.
    """
    parts = [
        report_type,
        preset,
        [window.start.isoformat(), window.end.isoformat()],
        since.isoformat() if since else "none",
        language,
        country,
        video_id,
    ]
    return json.dumps(parts, separators=(",", ":"), ensure_ascii=False)


def build_report_request(
    report_type: str,
    state: FilterState,
    today: date = None,
    tz_name: str = DEFAULT_TIMEZONE,
) -> ReportRequest:
    report_type = canonical_report_type(report_type)
    resolution = resolve_window(state, today=today, tz_name=tz_name)
    window = resolution.window
    since = _since_value(state)

    params = window.as_params()
    if state.date_preset != "custom":
        params["preset"] = state.date_preset
    if since:
        params["since"] = since.isoformat()
    if state.language != ALL:
        params["language"] = state.language
    if state.country != ALL:
        params["country"] = state.country
    if state.video_id != ALL:
        params["videoId"] = state.video_id

    cache_key = build_cache_key(
        report_type,
        state.date_preset,
        window,
        since,
        state.language,
        state.country,
        state.video_id,
    )
    return ReportRequest(
        report_type=report_type,
        params=params,
        cache_key=cache_key,
        window=window,
        previous_window=previous_period(window),
        filters=state,
        warnings=resolution.warnings,
    )

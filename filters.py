"""
Report filter resolution: FilterState -> DateWindow in the business timezone.

Windows are inclusive calendar-date ranges everywhere, including the
single-day 'today' and 'yesterday' presets (start == end). The only
half-open form is to_utc_bounds(), used when querying timestamps.

Resolution never raises on bad user input: unusable dates fall back to
today's window and come back as warnings, because every report request
must get a usable window.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Mapping, Optional, Tuple, Union

import pytz

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Paris"
DEFAULT_PRESET = "7d"
ALL = "all"

PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90}
PRESETS = ("today", "yesterday", "7d", "30d", "90d", "custom")

DateLike = Union[date, datetime, str, None]


def parse_date(value: DateLike) -> Optional[date]:
    """Accepts date/datetime objects, 'YYYY-MM-DD' and 'DD/MM/YYYY'; else None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _text(value: Any) -> str:
    # query values may arrive as numbers from a JSON body
    return "" if value is None else str(value).strip()


def _normalize_language(language: Any) -> str:
    text = _text(language).lower()
    return text or ALL


def _normalize_country(country: Any) -> str:
    text = _text(country)
    if not text or text.lower() == ALL:
        return ALL
    return text.upper()


def _normalize_entity(value: Any) -> str:
    text = _text(value)
    if not text or text.lower() == ALL:
        return ALL
    return text


@dataclass(frozen=True)
class FilterState:
    """Complete, immutable snapshot of a caller's report filters."""

    date_preset: str = DEFAULT_PRESET
    custom_start: DateLike = None
    custom_end: DateLike = None
    since_date: DateLike = None
    since_enabled: bool = False
    language: str = ALL
    country: str = ALL
    video_id: str = ALL

    def __post_init__(self):
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "date_preset", _text(self.date_preset) or DEFAULT_PRESET)
        object.__setattr__(self, "language", _normalize_language(self.language))
        object.__setattr__(self, "country", _normalize_country(self.country))
        object.__setattr__(self, "video_id", _normalize_entity(self.video_id))

    def with_changes(self, **changes) -> "FilterState":
        return replace(self, **changes)

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "FilterState":
        """
        Build a state from report API query params:
        preset | startDate+endDate, since, language (or lang/locale), country, videoId.
        """
        start = query.get("startDate")
        end = query.get("endDate")
        preset = query.get("preset")
        if not preset:
            preset = "custom" if (start or end) else DEFAULT_PRESET
        since = query.get("since") or query.get("sinceDate")
        return cls(
            date_preset=str(preset),
            custom_start=start,
            custom_end=end,
            since_date=since,
            since_enabled=bool(since),
            language=query.get("language") or query.get("lang") or query.get("locale"),
            country=query.get("country"),
            video_id=query.get("videoId"),
        )


@dataclass(frozen=True)
class DateWindow:
    """Inclusive [start, end] calendar-date window in the business timezone."""

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def previous_period(self) -> "DateWindow":
        return previous_period(self)

    def to_utc_bounds(self, tz_name: str = DEFAULT_TIMEZONE) -> Tuple[datetime, datetime]:
        """
        Half-open naive-UTC bounds [local start 00:00, local end+1 00:00),
        matching timestamps stored as naive UTC.
        """
        tz = pytz.timezone(tz_name)
        lower = tz.localize(datetime.combine(self.start, time.min))
        upper = tz.localize(datetime.combine(self.end + timedelta(days=1), time.min))
        return (
            lower.astimezone(pytz.utc).replace(tzinfo=None),
            upper.astimezone(pytz.utc).replace(tzinfo=None),
        )

    def as_params(self) -> dict:
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}


@dataclass(frozen=True)
class WindowResolution:
    window: DateWindow
    since_applied: bool = False
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def business_today(tz_name: str = DEFAULT_TIMEZONE, now: datetime = None) -> date:
    """Current calendar date in the business timezone (never the host's)."""
    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    return now.astimezone(pytz.timezone(tz_name)).date()


def previous_period(window: DateWindow) -> DateWindow:
    """Immediately preceding, non-overlapping window of the same length."""
    end = window.start - timedelta(days=1)
    return DateWindow(start=end - timedelta(days=window.days - 1), end=end)


def _base_window(state: FilterState, today: date, warnings: list) -> DateWindow:
    preset = state.date_preset
    if preset == "today":
        return DateWindow(today, today)
    if preset == "yesterday":
        day = today - timedelta(days=1)
        return DateWindow(day, day)
    if preset in PRESET_DAYS:
        return DateWindow(today - timedelta(days=PRESET_DAYS[preset] - 1), today)
    if preset == "custom":
        if state.custom_start in (None, "") or state.custom_end in (None, ""):
            warnings.append("Custom range is incomplete; showing today")
            return DateWindow(today, today)
        start = parse_date(state.custom_start)
        end = parse_date(state.custom_end)
        if start is None or end is None:
            warnings.append(
                f"Custom range {state.custom_start!r}..{state.custom_end!r} is not a valid date; showing today"
            )
            return DateWindow(today, today)
        if start > end:
            warnings.append(
                f"Custom range starts after it ends ({start} > {end}); showing today"
            )
            return DateWindow(today, today)
        return DateWindow(start, end)

    warnings.append(f"Unknown date preset {preset!r}; showing today")
    return DateWindow(today, today)


def resolve_window(
    state: FilterState, today: date = None, tz_name: str = DEFAULT_TIMEZONE
) -> WindowResolution:
    """
    Resolve the report window for a filter snapshot.

    The exclusion ("since") date only ever narrows the start forward; if it
    lies past the end, the end moves up to it so start <= end always holds.
    """
    today = today or business_today(tz_name)
    warnings: list = []

    window = _base_window(state, today, warnings)
    since_applied = False

    if state.since_enabled and state.since_date not in (None, ""):
        since = parse_date(state.since_date)
        if since is None:
            warnings.append(f"Since date {state.since_date!r} is not a valid date; ignored")
        elif since > window.start:
            window = DateWindow(start=since, end=max(window.end, since))
            since_applied = True

    for message in warnings:
        logger.warning(f"Filter resolution: {message}")

    return WindowResolution(window=window, since_applied=since_applied, warnings=tuple(warnings))

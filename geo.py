"""
Country name -> ISO 3166 code resolution for session geo attributes.

Resolution is a pure function of the input text: alias table first, then the
pycountry registry (exact canonical name, then a case-insensitive scan over
name / official name / common name). Nothing here touches the network, so
re-running a day's extraction always produces the same codes.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, Optional, Tuple, Union

import pycountry

logger = logging.getLogger(__name__)

# Colloquial / deprecated names seen in the export -> registry name
COUNTRY_ALIASES: Dict[str, str] = {
    "usa": "United States",
    "u.s.a.": "United States",
    "us": "United States",
    "united states of america": "United States",
    "uk": "United Kingdom",
    "u.k.": "United Kingdom",
    "great britain": "United Kingdom",
    "south korea": "Korea, Republic of",
    "north korea": "Korea, Democratic People's Republic of",
    "russia": "Russian Federation",
    "vietnam": "Viet Nam",
    "laos": "Lao People's Democratic Republic",
    "moldova": "Moldova, Republic of",
    "iran": "Iran, Islamic Republic of",
    "syria": "Syrian Arab Republic",
    "tanzania": "Tanzania, United Republic of",
    "bolivia": "Bolivia, Plurinational State of",
    "venezuela": "Venezuela, Bolivarian Republic of",
    "czech republic": "Czechia",
    "cape verde": "Cabo Verde",
    "ivory coast": "Côte d'Ivoire",
    "congo-brazzaville": "Congo",
    "congo-kinshasa": "Congo, The Democratic Republic of the",
    "palestine": "Palestine, State of",
    "swaziland": "Eswatini",
    "macedonia": "North Macedonia",
    "turkey": "Türkiye",
    "taiwan": "Taiwan, Province of China",
}

# Inputs that mean "no country" rather than an unknown one
PLACEHOLDER_NAMES = frozenset({"", "(not set)", "unknown", "null", "none"})


@dataclass(frozen=True)
class Resolved:
    iso2: str
    iso3: str

    @property
    def resolved(self) -> bool:
        return True


@dataclass(frozen=True)
class Unresolved:
    raw: Optional[str]

    iso2 = None
    iso3 = None

    @property
    def resolved(self) -> bool:
        return False

    @property
    def is_placeholder(self) -> bool:
        return self.raw is None or self.raw.strip().lower() in PLACEHOLDER_NAMES


GeoResult = Union[Resolved, Unresolved]


def _build_indexes():
    exact = {}
    folded = {}
    for country in pycountry.countries:
        exact[country.name] = country
        for attr in ("name", "official_name", "common_name"):
            label = getattr(country, attr, None)
            if label:
                # First registration wins so the scan order is stable
                folded.setdefault(label.lower(), country)
    return exact, folded


_EXACT_INDEX, _FOLDED_INDEX = _build_indexes()


def normalize_country_name(name: str) -> str:
    """Trim, then map through the alias table (aliases are matched lowercased)."""
    cleaned = name.strip()
    return COUNTRY_ALIASES.get(cleaned.lower(), cleaned)


@lru_cache(maxsize=None)
def resolve_country(name: Optional[str]) -> GeoResult:
    """
    Resolve a free-text country name to ISO2/ISO3 codes.

    Returns Resolved(iso2, iso3) or Unresolved(raw). Never raises for bad
    input: unknown names are a data-quality signal, not an error.
    """
    if name is None or name.strip().lower() in PLACEHOLDER_NAMES:
        return Unresolved(raw=name)

    canonical = normalize_country_name(name)

    country = _EXACT_INDEX.get(canonical)
    if country is None:
        country = _FOLDED_INDEX.get(canonical.lower())
    if country is None:
        return Unresolved(raw=name)

    return Resolved(iso2=country.alpha_2, iso3=country.alpha_3)


def resolve_country_codes(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Tuple form used when writing rows: (iso2, iso3) or (None, None)."""
    result = resolve_country(name)
    return result.iso2, result.iso3


def enrich_sessions_geo(sessions: Iterable, log: logging.Logger = None) -> int:
    """
    Set country_iso2/country_iso3 on each session record in place.

    Logs one warning per distinct unresolved country name and returns the
    number of sessions whose (non-placeholder) country could not be resolved.
    """
    log = log or logger
    unresolved_names: Dict[str, int] = {}
    misses = 0

    for session in sessions:
        result = resolve_country(session.country)
        session.country_iso2 = result.iso2
        session.country_iso3 = result.iso3
        if isinstance(result, Unresolved) and not result.is_placeholder:
            misses += 1
            unresolved_names[result.raw] = unresolved_names.get(result.raw, 0) + 1

    for raw, count in sorted(unresolved_names.items()):
        log.warning(f"[geo] Unresolved country: {raw!r} ({count} sessions)")

    return misses

"""Text normalization for messy upstream posting fields.

Three independent concerns, each a set of small named strategies tried in
a fixed priority order. A later strategy never overrides an earlier
successful one, so every strategy can be tested on its own:

1. Location  — free text → (city, 2-letter region code), raw text kept
2. Company   — slug or legal name → display name (never used as identity)
3. Pay       — title + location + description → first pay snippet found

Everything here is pure: no I/O, no logging side effects on success.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from bs4 import BeautifulSoup

# ── Region dictionary ──────────────────────────────────────────────────────

STATE_NAME_TO_CODE: dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}

STATE_CODES = frozenset(STATE_NAME_TO_CODE.values())

_STATE_NAMES_BY_LENGTH = sorted(STATE_NAME_TO_CODE, key=len, reverse=True)
# Longest alternative first so "West Virginia" wins over "Virginia".
_STATE_NAME_RE = re.compile(
    r"\b(" + "|".join(re.escape(n) for n in _STATE_NAMES_BY_LENGTH) + r")\b", re.IGNORECASE
)

_POSTAL_CODE = r"\d{5}(?:-\d{4})?"
_STATE_CODE_RE = re.compile(rf"\b([A-Z]{{2}})\b(?:\s+{_POSTAL_CODE})?")
_POSTAL_CODE_RE = re.compile(rf"\b{_POSTAL_CODE}\b")
_ADDRESS_RE = re.compile(r"\b(suite|ste|unit|apt|floor|bldg|building)\b|#", re.IGNORECASE)


def normalize_state(value: Optional[str]) -> Optional[str]:
    """Map a region code or full region name to its 2-letter code.

    Unknown values are returned trimmed and upper-cased so that a filter
    for a non-US region still compares exactly.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    if len(text) == 2:
        return text.upper()
    return STATE_NAME_TO_CODE.get(text.lower(), text.upper())


# ── Location parsing ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class LocationResult:
    raw: str
    city: Optional[str] = None
    state: Optional[str] = None
    remote: bool = False


@dataclass(frozen=True)
class _RegionMatch:
    state: str
    segment_index: int
    segment_rest: str  # segment text with the region token removed


def clean_location(text: Optional[str]) -> str:
    """Trim and drop trailing periods ("Santa Monica." → "Santa Monica")."""
    return (text or "").strip().rstrip(".").strip()


def _split_segments(raw: str) -> list[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


def _strip_region_leftovers(text: str) -> str:
    text = _POSTAL_CODE_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip(" -")


def _is_address_like(segment: str) -> bool:
    return bool(segment[:1].isdigit() or _ADDRESS_RE.search(segment))


def match_remote(raw: str) -> Optional[LocationResult]:
    """Strategy 1: anything mentioning "remote" is remote, no region."""
    if "remote" in raw.lower():
        return LocationResult(raw=raw, remote=True)
    return None


def match_state_code(segments: list[str]) -> Optional[_RegionMatch]:
    """Strategy 2: a known 2-letter region code, scanning from the end.

    Matches "Chicago, IL", "Austin TX 78701" and "..., TX 77042". The
    code must be upper-case so words like "in" or "or" never match.
    """
    for index in range(len(segments) - 1, -1, -1):
        segment = segments[index]
        for m in _STATE_CODE_RE.finditer(segment):
            code = m.group(1)
            if code in STATE_CODES:
                rest = segment[: m.start()] + " " + segment[m.end():]
                return _RegionMatch(code, index, _strip_region_leftovers(rest))
    return None


def match_state_name(segments: list[str]) -> Optional[_RegionMatch]:
    """Strategy 3: a full region name from the dictionary, scanning from the end.

    The last name in the text wins, so "Delaware, Ohio" is Delaware in OH.
    """
    for index in range(len(segments) - 1, -1, -1):
        segment = segments[index]
        found = list(_STATE_NAME_RE.finditer(segment))
        if found:
            m = found[-1]
            rest = segment[: m.start()] + " " + segment[m.end():]
            return _RegionMatch(
                STATE_NAME_TO_CODE[m.group(1).lower()], index, _strip_region_leftovers(rest)
            )
    return None


def pick_city(segments: list[str], region: _RegionMatch) -> Optional[str]:
    """Strategy 4: nearest non-address text at or before the region token."""
    if region.segment_rest and not _is_address_like(region.segment_rest):
        return region.segment_rest
    for index in range(region.segment_index - 1, -1, -1):
        if not _is_address_like(segments[index]):
            return segments[index]
    return None


REGION_STRATEGIES: tuple[Callable[[list[str]], Optional[_RegionMatch]], ...] = (
    match_state_code,
    match_state_name,
)


def parse_location(text: Optional[str]) -> LocationResult:
    """Parse free-text location into city and region code.

    Unparseable input keeps the raw text with city and state set to None.
    """
    raw = clean_location(text)
    if not raw:
        return LocationResult(raw="")

    remote = match_remote(raw)
    if remote:
        return remote

    segments = _split_segments(raw)
    for strategy in REGION_STRATEGIES:
        region = strategy(segments)
        if region:
            return LocationResult(raw=raw, city=pick_city(segments, region), state=region.state)

    return LocationResult(raw=raw)


def score_location(text: str) -> float:
    if not text:
        return 0.0
    score = 0.0
    if "," in text:
        score += 3
    if re.search(r"\b[A-Z]{2}\b", text):
        score += 4
    if re.search(r"\b(United States|USA)\b", text, re.IGNORECASE):
        score += 1
    if re.search(r"\d", text):
        score += 1
    score += min(len(text), 80) / 80
    return score


def best_location(*candidates: Optional[str]) -> str:
    """Pick the most informative of several location strings a source offers."""
    cleaned = [clean_location(c) for c in candidates]
    cleaned = [c for c in cleaned if c]
    if not cleaned:
        return ""
    return max(cleaned, key=score_location)


# ── Company names ──────────────────────────────────────────────────────────

_LEGAL_SUFFIX_RE = re.compile(
    r"[\s,]+(llc|l\.l\.c|inc|incorporated|ltd|limited|lp|l\.p|reit)\.?$",
    re.IGNORECASE,
)


def _override_key(name: str) -> str:
    return re.sub(r"\s+", "", name).lower()


def title_case_word(word: str) -> str:
    if 2 <= len(word) <= 3 and word.isalpha() and word.isupper():
        return word
    return word[:1].upper() + word[1:].lower()


def normalize_company(name: Optional[str], overrides: Optional[dict[str, str]] = None) -> str:
    """Turn a board slug or legal name into a display name.

    "acme_realty" → "Acme Realty", "JLL Partners, LLC" → "JLL Partners".
    The override table is checked first and wins outright.
    """
    text = (name or "").strip()
    if not text:
        return ""

    if overrides:
        lookup = {_override_key(k): v for k, v in overrides.items()}
        hit = lookup.get(_override_key(text))
        if hit:
            return hit

    text = re.sub(r"[_\-]+", " ", text)
    while True:
        stripped = _LEGAL_SUFFIX_RE.sub("", text).strip()
        if stripped == text or not stripped:
            break
        text = stripped

    return " ".join(title_case_word(w) for w in text.split())


# ── Pay signals ────────────────────────────────────────────────────────────

PAY_MENTIONED = "Pay mentioned (see listing)"

_AMOUNT = r"\$\s?\d{2,3}(?:,\d{3})?(?:\.\d{2})?[kK]?"
_ANNUAL = r"(?:/\s?year|/\s?yr|per year|a year|annually|annum|yr)"
_HOURLY = r"(?:/\s?hour|/\s?hr|per hour|an hour|hourly|hr)"

PAY_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("currency_range", re.compile(
        rf"{_AMOUNT}\s?(?:-|–|—|to)\s?{_AMOUNT}(?:\s?{_ANNUAL}|\s?{_HOURLY})?",
        re.IGNORECASE,
    )),
    ("annual_amount", re.compile(
        rf"\$\s?\d{{2,3}}(?:,\d{{3}})+(?:\.\d{{2}})?\s?{_ANNUAL}", re.IGNORECASE
    )),
    ("hourly_rate", re.compile(
        rf"\$\s?\d+(?:,\d{{3}})*(?:\.\d{{2}})?\s?{_HOURLY}", re.IGNORECASE
    )),
    ("ote_phrase", re.compile(
        r"\b(?:OTE|on[-\s]?target earnings)\b.{0,80}?\$\s?\d[\d,]*", re.IGNORECASE
    )),
    ("salary_phrase", re.compile(
        r"\b(?:base salary|salary range|compensation|pay range)\b.{0,80}?\$\s?\d[\d,]*",
        re.IGNORECASE,
    )),
)

_PAY_KEYWORD_RE = re.compile(r"salary|compensation|pay|hour|year", re.IGNORECASE)


@dataclass(frozen=True)
class PaySignal:
    has_pay: bool
    pay_extracted: Optional[str]


def html_to_text(html: Optional[str]) -> str:
    """Strip markup (scripts and styles included) and collapse whitespace."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text(separator=" "))


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def extract_pay_from_text(text: str) -> Optional[str]:
    """Return the first structured pay snippet, the generic marker, or None."""
    for _name, pattern in PAY_PATTERNS:
        m = pattern.search(text)
        if m:
            return collapse_whitespace(m.group(0))

    if "$" in text and _PAY_KEYWORD_RE.search(text):
        return PAY_MENTIONED
    return None


def compute_pay_fields(
    title: Optional[str] = "",
    location: Optional[str] = "",
    description: Optional[str] = "",
) -> PaySignal:
    combined = "\n".join([title or "", location or "", description or ""])
    pay = extract_pay_from_text(html_to_text(combined))
    return PaySignal(has_pay=pay is not None, pay_extracted=pay)

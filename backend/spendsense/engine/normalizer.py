"""
Transaction description normalizer.

Turns a raw bank description such as ``"POS DEBIT NETFLIX.COM 8882099918 CA"``
into the canonical pattern used as the clustering key (``"netflix"``).

Normalization steps:
- case-fold
- drop currency symbols, currency codes and embedded amounts
- drop web domain suffixes and ``www`` prefixes
- replace punctuation with spaces and collapse whitespace
- drop reference / store / terminal numbers (4+ digits, optional ``#``)
- drop payment-processor noise tokens (POS, DEBIT, PURCHASE, ...)
- drop a trailing state abbreviation, plus the city before it when that
  word is a known city or sits right after a dropped reference number
- bound the length at a token boundary

The steps only ever remove text, so applying them until nothing changes
always terminates and makes ``normalize`` idempotent. A trailing state code
is always read as a location, so when the word left at the end is itself a
state code it goes too on the next pass: ``"coffee co denver co"`` becomes
``"coffee"``.
"""

from dataclasses import dataclass
import re

DEFAULT_MAX_LENGTH = 64

NOISE_TOKENS = frozenset({
    "pos", "debit", "credit", "purchase", "ach", "pmt", "payment", "txn",
    "checkcard", "chkcard", "dbt", "visa", "mastercard", "recurring",
    "online", "web", "preauthorized", "authorized", "card", "sq", "tst",
})

STATE_ABBREVIATIONS = frozenset({
    "al", "ak", "az", "ar", "ca", "co", "ct", "de", "dc", "fl", "ga", "hi",
    "id", "il", "in", "ia", "ks", "ky", "la", "me", "md", "ma", "mi", "mn",
    "ms", "mo", "mt", "ne", "nv", "nh", "nj", "nm", "ny", "nc", "nd", "oh",
    "ok", "or", "pa", "ri", "sc", "sd", "tn", "tx", "ut", "vt", "va", "wa",
    "wv", "wi", "wy",
})

KNOWN_CITIES = frozenset({
    "atlanta", "austin", "boston", "brooklyn", "chicago", "dallas", "denver",
    "detroit", "houston", "las vegas", "los angeles", "miami", "minneapolis",
    "nashville", "new york", "oakland", "orlando", "philadelphia", "phoenix",
    "portland", "salt lake city", "san antonio", "san diego", "san francisco",
    "san jose", "seattle",
})
MAX_CITY_WORDS = 3

_CURRENCY_AMOUNT = re.compile(r"[$€£¥]\s*\d[\d,]*(?:\.\d+)?")
_DECIMAL_AMOUNT = re.compile(r"\b\d[\d,]*\.\d{2}\b")
_CURRENCY_CODE = re.compile(r"\b(?:usd|eur|gbp|cad|aud)\b")
_REFERENCE_NUMBER = re.compile(r"\d{4,}")
_DOMAIN_SUFFIX = re.compile(r"\.(?:com|net|org|co|io)\b")
_WWW_PREFIX = re.compile(r"\bwww\.")
_PUNCTUATION = re.compile(r"[^\w\s&']|_")
_WHITESPACE = re.compile(r"\s+")

# Placeholder for a dropped reference number while the location suffix is read
_NUMBER = None


@dataclass(frozen=True)
class NormalizerConfig:
    max_length: int = DEFAULT_MAX_LENGTH


def _word_count(tokens: list) -> int:
    return sum(1 for t in tokens if t is not _NUMBER)


def _city_length(tokens: list) -> int:
    """Number of trailing tokens that name a known city, or 0."""
    for size in range(min(MAX_CITY_WORDS, len(tokens) - 1), 0, -1):
        tail = tokens[-size:]
        if _NUMBER not in tail and " ".join(tail) in KNOWN_CITIES:
            return size
    return 0


def _strip_location_suffix(tokens: list) -> list:
    # Reference numbers are _NUMBER placeholders here; a store number right
    # before the last word marks that word as a city.
    while tokens and tokens[-1] is _NUMBER:
        tokens = tokens[:-1]

    if _word_count(tokens) < 2 or tokens[-1] not in STATE_ABBREVIATIONS:
        return tokens

    tokens = tokens[:-1]
    while tokens and tokens[-1] is _NUMBER:
        tokens = tokens[:-1]

    city = _city_length(tokens)
    if city and _word_count(tokens[:-city]):
        return tokens[:-city]
    if len(tokens) >= 3 and tokens[-2] is _NUMBER and _word_count(tokens[:-1]):
        return tokens[:-1]
    return tokens


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    if text[max_length] != " " and " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.strip()


def _normalize_once(text: str, config: NormalizerConfig) -> str:
    text = text.casefold()
    text = _CURRENCY_AMOUNT.sub(" ", text)
    text = _DECIMAL_AMOUNT.sub(" ", text)
    text = _CURRENCY_CODE.sub(" ", text)
    text = _WWW_PREFIX.sub(" ", text)
    text = _DOMAIN_SUFFIX.sub(" ", text)
    text = _PUNCTUATION.sub(" ", text)

    tokens = []
    for token in _WHITESPACE.split(text):
        token = token.strip("'&")
        if not token or token in NOISE_TOKENS:
            continue
        tokens.append(_NUMBER if _REFERENCE_NUMBER.fullmatch(token) else token)

    tokens = _strip_location_suffix(tokens)
    words = [t for t in tokens if t is not _NUMBER]
    return _truncate(" ".join(words), config.max_length)


def normalize(raw, config: NormalizerConfig = NormalizerConfig()) -> str:
    """
    Normalize a raw description into its canonical pattern.

    Never raises: ``None``, non-strings and descriptions made only of noise
    return ``""``, which callers treat as unresolvable.
    """
    if not isinstance(raw, str):
        return ""

    current = raw
    while True:
        result = _normalize_once(current, config)
        if result == current:
            return result
        current = result


def display_name(pattern: str) -> str:
    """Title-case a canonical pattern for display ("whole foods" -> "Whole Foods")."""
    return " ".join(word[:1].upper() + word[1:] for word in pattern.split())

import re
from enum import Enum
from typing import Mapping
from urllib.parse import urlparse

from .errors import MalformedUrlError, UnknownCountryError


class Country(str, Enum):
    AUSTRALIA = "AU"
    BULGARIA = "BG"
    BRAZIL = "BR"
    CHILE = "CH"
    COLOMBIA = "CO"
    GEORGIA = "GE"
    HUNGARY = "HU"
    INDIA = "IN"
    JORDAN = "JO"
    POLAND = "PL"
    RUSSIA = "RU"
    SOUTH_AFRICA = "SA"
    SWEDEN = "SW"
    UK = "UK"
    USA = "USA"


# Hostname suffix -> country. Longest suffix wins.
COUNTRY_DOMAINS: dict[str, Country] = {
    ".hu": Country.HUNGARY,
    ".se": Country.SWEDEN,
    ".bg": Country.BULGARIA,
    ".cl": Country.CHILE,
    ".uk": Country.UK,
    ".au": Country.AUSTRALIA,
    ".br": Country.BRAZIL,
    ".co": Country.COLOMBIA,
    ".ge": Country.GEORGIA,
    ".in": Country.INDIA,
    ".jo": Country.JORDAN,
    ".pl": Country.POLAND,
    ".ru": Country.RUSSIA,
    ".za": Country.SOUTH_AFRICA,
    "congress.gov": Country.USA,
    "govinfo.gov": Country.USA,
}

_SESSION_TOKENS = (
    re.compile(r"&p_auth=\w+"),
    re.compile(r"_PairProxy_INSTANCE_[a-zA-Z0-9]+"),
)


def hostname_of(url: str) -> str:
    """Lower-cased hostname; raises MalformedUrlError if the URL has none."""
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise MalformedUrlError(f"Not an absolute http(s) URL: {url!r}")
    return parsed.hostname.lower()


def country_from_url(url: str, extra_domains: Mapping[str, str | Country] | None = None) -> Country:
    """
    Map a URL to its country by hostname suffix.

    `extra_domains` extends the static table, values being Country members or
    their codes/names ("HU" or "HUNGARY").
    """
    host = hostname_of(url)
    table: dict[str, Country] = dict(COUNTRY_DOMAINS)
    for suffix, country in (extra_domains or {}).items():
        table[suffix.lower()] = _as_country(country)

    matches = [
        suffix for suffix in table
        if host == suffix.lstrip(".") or host.endswith(suffix if suffix.startswith(".") else f".{suffix}")
    ]
    if not matches:
        raise UnknownCountryError(f"Can not determine country from URL: {url}")
    return table[max(matches, key=len)]


def _as_country(value: str | Country) -> Country:
    if isinstance(value, Country):
        return value
    try:
        return Country[value.upper()]
    except KeyError:
        return Country(value.upper())


def clean_url(url: str) -> str:
    """Strip session info and auth tokens, used to detect already downloaded pages."""
    for pattern in _SESSION_TOKENS:
        url = pattern.sub("", url)
    return url


def uses_clean_url(url: str, clean_url_domains: list[str]) -> bool:
    """True if the URL's host is one of `clean_url_domains` or a subdomain of one."""
    host = urlparse(url).hostname or ""
    return any(host == domain or host.endswith(f".{domain}") for domain in clean_url_domains)

"""Layered extraction of the IP report page into a normalized record.

Each field is read by an ordered list of independent strategies; the first
one returning a value wins. Script-embedded globals come first because they
survive markup churn, DOM selectors are the fallback.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from ..core.keys import (
    K_ASN,
    K_ASN_OWNER,
    K_ASN_TYPE,
    K_ATTRIBUTION,
    K_COUNTRY_FLAG,
    K_IP,
    K_IP_LOCATION,
    K_IP_TYPE,
    K_LATITUDE,
    K_LONGITUDE,
    K_NATIVE_IP,
    K_ORG_TYPE,
    K_ORGANIZATION,
    K_RISK_VALUE,
)
from .errors import MARKER_ERRORS, ClassifiedError, EmptyResult, UnrecognizedPage, UpstreamServerError
from .html_normalize import decode_entities, excerpt, minimal_text_fix, strip_tags
from .pong0_config import (
    ATTRIBUTION_URL,
    DEFAULT_SITE_TITLE,
    ERROR_PAGE_MARKERS,
    ERROR_SUBMISSION_ARTIFACT,
    EXCERPT_LIMIT,
    LATITUDE_LABEL,
    LONGITUDE_LABEL,
    SHORT_PAGE_CHARS,
    SYSTEM_ERROR_MARKER,
)

SCRIPT_GLOBALS = ("ip", "tar", "longitude", "latitude", "loc")
OWNER_DASH = "—"

_SCRIPT_GLOBAL_RES = {
    name: re.compile(rf"window\.{name}\s*=\s*['\"]([^'\"]*)['\"](;|\s)", re.I) for name in SCRIPT_GLOBALS
}


@dataclass(frozen=True)
class NormalizedRecord:
    ip: str
    ip_location: Optional[str] = None
    country_flag: Optional[str] = None
    asn: Optional[str] = None
    asn_owner: Optional[str] = None
    asn_type: Optional[str] = None
    organization: Optional[str] = None
    org_type: Optional[str] = None
    longitude: Optional[str] = None
    latitude: Optional[str] = None
    ip_type: Optional[str] = None
    risk_value: Optional[str] = None
    native_ip: Optional[str] = None
    attribution: str = ATTRIBUTION_URL

    def to_dict(self) -> Dict[str, str]:
        fields = (
            (K_IP, self.ip),
            (K_IP_LOCATION, self.ip_location),
            (K_COUNTRY_FLAG, self.country_flag),
            (K_ASN, self.asn),
            (K_ASN_OWNER, self.asn_owner),
            (K_ASN_TYPE, self.asn_type),
            (K_ORGANIZATION, self.organization),
            (K_ORG_TYPE, self.org_type),
            (K_LONGITUDE, self.longitude),
            (K_LATITUDE, self.latitude),
            (K_IP_TYPE, self.ip_type),
            (K_RISK_VALUE, self.risk_value),
            (K_NATIVE_IP, self.native_ip),
            (K_ATTRIBUTION, self.attribution),
        )
        return {key: value for key, value in fields if value is not None}


class PageContext:
    """Parsed page plus the script globals every strategy may consult."""

    def __init__(self, html: str) -> None:
        self.html = html or ""
        self.soup = BeautifulSoup(self.html, "lxml")
        title_tag = self.soup.find("title")
        self.title = title_tag.get_text() if title_tag else ""
        self.script_values = extract_script_globals(self.soup)

    def body_text(self) -> str:
        body = self.soup.body or self.soup
        return body.get_text(" ", strip=True)


Strategy = Callable[[PageContext], Optional[str]]


def extract_script_globals(soup: BeautifulSoup) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for script in soup.find_all("script"):
        content = script.string or ""
        if not content:
            continue
        for name, pattern in _SCRIPT_GLOBAL_RES.items():
            if f"window.{name}" not in content:
                continue
            match = pattern.search(content)
            if match and match.group(1):
                values[name] = match.group(1)
    return values


def first_present(strategies: Sequence[Strategy], ctx: PageContext) -> Optional[str]:
    for strategy in strategies:
        value = strategy(ctx)
        if value:
            return value
    return None


def script_global(name: str, *, decode: bool = False) -> Strategy:
    def _strategy(ctx: PageContext) -> Optional[str]:
        value = ctx.script_values.get(name)
        if value and decode:
            return decode_entities(value)
        return value or None

    _strategy.__name__ = f"script_global_{name}"
    return _strategy


def title_leading_segment(ctx: PageContext) -> Optional[str]:
    if "-" not in ctx.title:
        return None
    return ctx.title.split("-", 1)[0].strip() or None


def location_region(ctx: PageContext) -> Optional[str]:
    found: Optional[str] = None
    for element in ctx.soup.select(".line.loc .content"):
        text = strip_tags(element.decode_contents())
        text = text.replace(ERROR_SUBMISSION_ARTIFACT, "")
        text = decode_entities(text.strip()).strip()
        if text:
            found = text
    return found


def labeled_row(label: str) -> Strategy:
    def _strategy(ctx: PageContext) -> Optional[str]:
        found: Optional[str] = None
        for row in ctx.soup.select(".line"):
            name = row.select_one(".name")
            if name is None or name.get_text().strip() != label:
                continue
            content = row.select_one(".content")
            found = content.get_text().strip() if content is not None else ""
        return found or None

    _strategy.__name__ = f"labeled_row_{label}"
    return _strategy


IP_STRATEGIES: Tuple[Strategy, ...] = (script_global("ip"), title_leading_segment)
LOCATION_STRATEGIES: Tuple[Strategy, ...] = (script_global("loc", decode=True), location_region)
LONGITUDE_STRATEGIES: Tuple[Strategy, ...] = (script_global("longitude"), labeled_row(LONGITUDE_LABEL))
LATITUDE_STRATEGIES: Tuple[Strategy, ...] = (script_global("latitude"), labeled_row(LATITUDE_LABEL))


def country_flag(ctx: PageContext) -> Optional[str]:
    flag: Optional[str] = None
    for img in ctx.soup.select(".line.loc .content img"):
        src = img.get("src")
        if not src:
            continue
        stem = PurePosixPath(urlparse(src).path).stem
        if stem:
            flag = stem
    return flag


def last_text(ctx: PageContext, selector: str) -> Optional[str]:
    found: Optional[str] = None
    for element in ctx.soup.select(selector):
        found = element.get_text().strip()
    return found


def joined_labels(ctx: PageContext, selector: str) -> Optional[str]:
    labels = [el.get_text().strip() for el in ctx.soup.select(selector)]
    labels = [label for label in labels if label]
    return "; ".join(labels) if labels else None


def owner_with_tags(ctx: PageContext, selector: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (owner text, ``"; "``-joined tags) for a labeled owner region.

    Tags are removed before the owner text is read, the text is cut at an
    em-dash and entity-decoded. The tag string is empty, not None, when the
    region exists without tags.
    """

    owner: Optional[str] = None
    tags: Optional[str] = None
    for element in ctx.soup.select(selector):
        stripped = copy.copy(element)
        for label in stripped.select(".label"):
            label.decompose()
        text = stripped.get_text().strip()
        dash = text.find(OWNER_DASH)
        if dash != -1:
            text = text[:dash].strip()
        owner = decode_entities(text)
        kinds = [label.get_text().strip() for label in element.select(".label")]
        tags = "; ".join(kind for kind in kinds if kind)
    return owner, tags


def risk_value(ctx: PageContext) -> Optional[str]:
    found: Optional[str] = None
    for element in ctx.soup.select(".line.line-risk .content .riskbar .riskcurrent"):
        value_el = element.select_one(".value")
        lab_el = element.select_one(".lab")
        value = value_el.get_text().strip() if value_el is not None else ""
        lab = lab_el.get_text().strip() if lab_el is not None else ""
        if value and lab:
            found = f"{value} {lab}"
    return found


def classify_error_page(ctx: PageContext) -> ClassifiedError:
    """Explain a page that yielded no IP: marker phrase first, diagnostics otherwise."""

    page_text = ctx.body_text()
    for phrases, code, message in ERROR_PAGE_MARKERS:
        if any(phrase in ctx.html or phrase in page_text for phrase in phrases):
            return MARKER_ERRORS[code](message)

    snippet = excerpt(page_text, EXCERPT_LIMIT)
    if len(page_text) < SHORT_PAGE_CHARS:
        return UnrecognizedPage(f'Page content looks abnormal (content length: {len(page_text)}), content: "{snippet}"')

    title = ctx.title.strip()
    heading = ctx.soup.find("h1")
    heading_text = heading.get_text().strip() if heading is not None else ""
    error_text = " ".join(
        el.get_text().strip() for el in ctx.soup.select(".error, .alert, .message") if el.get_text().strip()
    )
    if error_text:
        return UnrecognizedPage(f'Site returned an error message: "{error_text}", page excerpt: "{snippet}"')
    if title and title != DEFAULT_SITE_TITLE:
        return UnrecognizedPage(f'Unexpected page title: "{title}", page excerpt: "{snippet}"')
    if heading_text:
        return UnrecognizedPage(f'Unexpected page content, H1 text: "{heading_text}", page excerpt: "{snippet}"')
    return UnrecognizedPage(f'Unable to extract IP information from the page, content: "{snippet}"')


def parse_ip_page(html: str) -> NormalizedRecord:
    """Parse the IP report page or raise the matching classified error."""

    if not html:
        raise EmptyResult("HTML content is empty")
    if SYSTEM_ERROR_MARKER in html:
        raise UpstreamServerError("Site returned an error: internal system error")

    ctx = PageContext(minimal_text_fix(html))
    if SYSTEM_ERROR_MARKER in ctx.title or "Error" in ctx.title:
        raise UnrecognizedPage(f"Site returned an error page: {ctx.title}")

    ip = first_present(IP_STRATEGIES, ctx)
    if not ip:
        raise classify_error_page(ctx)

    asn_owner, asn_type = owner_with_tags(ctx, ".line.asnname .content")
    organization, org_type = owner_with_tags(ctx, ".line.orgname .content")
    return NormalizedRecord(
        ip=ip,
        ip_location=first_present(LOCATION_STRATEGIES, ctx),
        country_flag=country_flag(ctx),
        asn=last_text(ctx, ".line.asn .content a"),
        asn_owner=asn_owner,
        asn_type=asn_type,
        organization=organization,
        org_type=org_type,
        longitude=first_present(LONGITUDE_STRATEGIES, ctx),
        latitude=first_present(LATITUDE_STRATEGIES, ctx),
        ip_type=joined_labels(ctx, ".line.line-iptype .content .label"),
        risk_value=risk_value(ctx),
        native_ip=last_text(ctx, ".line.line-nativeip .content .label"),
    )


__all__ = [
    "NormalizedRecord",
    "PageContext",
    "Strategy",
    "IP_STRATEGIES",
    "LOCATION_STRATEGIES",
    "LONGITUDE_STRATEGIES",
    "LATITUDE_STRATEGIES",
    "extract_script_globals",
    "first_present",
    "script_global",
    "title_leading_segment",
    "location_region",
    "labeled_row",
    "country_flag",
    "owner_with_tags",
    "risk_value",
    "classify_error_page",
    "parse_ip_page",
]

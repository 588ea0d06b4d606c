from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from lxml import etree, html as lxml_html

from locaudit.config import DEFAULT_FETCH_TIMEOUT, DEFAULT_USER_AGENT, Settings

log = logging.getLogger(__name__)

_NOISE_XPATH = "//script | //style | //noscript | //svg | //img"
_NAV_XPATH = "//nav//a | //header//a"
_HEADING_XPATH = "//h1 | //h2 | //h3 | //h4 | //h5 | //h6"
_CTA_XPATH = (
    "//button | //*[@role='button'] | //input[@type='submit']"
    " | //a[contains(concat(' ', normalize-space(@class), ' '), ' btn ')]"
    " | //a[contains(concat(' ', normalize-space(@class), ' '), ' button ')]"
)
_BODY_XPATH = "//p | //li | //td | //th | //label | //span | //div"


class FetchError(Exception):
    """Page could not be fetched (network failure or HTTP error status)."""


class EmptyPageError(FetchError):
    """Page was fetched but yielded no visible text."""


@dataclass
class ExtractedText:
    navigation: list[str]
    headings: list[str]
    body: list[str]
    cta_buttons: list[str]

    @property
    def all_text(self) -> str:
        """All segments, first occurrence wins, one per line."""
        seen: dict[str, None] = {}
        for segment in (*self.navigation, *self.headings, *self.body, *self.cta_buttons):
            seen.setdefault(segment, None)
        return "\n".join(seen)


@dataclass
class FetchResult:
    url: str
    final_url: str
    status_code: int
    html: str
    title: str
    text: str


def _node_text(node) -> str:
    return " ".join(node.text_content().split())


def extract_sections(raw_html: str) -> ExtractedText:
    """Split a page's visible text into navigation, headings, body and CTA segments."""
    empty = ExtractedText([], [], [], [])
    if not raw_html or not raw_html.strip():
        return empty
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return empty

    for node in tree.xpath(_NOISE_XPATH):
        if node.getparent() is None:
            return empty
        node.drop_tree()

    navigation = [t for t in (_node_text(n) for n in tree.xpath(_NAV_XPATH)) if t]
    headings = [t for t in (_node_text(n) for n in tree.xpath(_HEADING_XPATH)) if t]

    cta_buttons: list[str] = []
    for node in tree.xpath(_CTA_XPATH):
        text = _node_text(node) or (node.get("value") or "").strip()
        if text:
            cta_buttons.append(text)

    # Leaf elements only, so nested containers don't repeat their children's text
    body = [
        t for t in (_node_text(n) for n in tree.xpath(_BODY_XPATH) if len(n) == 0)
        if len(t) > 2
    ]
    return ExtractedText(navigation, headings, body, cta_buttons)


def extract_text(raw_html: str) -> str:
    """Extract de-duplicated visible text from HTML, one segment per line."""
    return extract_sections(raw_html).all_text


def _extract_title(raw_html: str) -> str:
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    return " ".join(" ".join(tree.xpath("//title//text()")).split())


async def fetch_page(
    url: str,
    user_agent: str | None = None,
    accept_language: str | None = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_text: int | None = None,
) -> FetchResult:
    """Fetch *url* and extract its visible text.

    Raises:
        FetchError: transport failure or HTTP status >= 400.
        EmptyPageError: the page contains no extractable text.
    """
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    headers = {"User-Agent": user_agent or DEFAULT_USER_AGENT}
    if accept_language:
        headers["Accept-Language"] = accept_language

    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout),
            headers=headers,
        ) as client:
            resp = await client.get(url)
    except httpx.HTTPError as exc:
        raise FetchError(f"Failed to fetch {url}: {exc}") from exc

    if resp.status_code >= 400:
        raise FetchError(f"Failed to fetch page: HTTP {resp.status_code}")

    raw_html = resp.text
    text = extract_text(raw_html)
    if not text.strip():
        raise EmptyPageError(f"No text extracted from {url}")
    if max_text:
        text = text[:max_text]

    log.debug("Fetched %s (%d chars of text)", url, len(text))
    return FetchResult(
        url=url,
        final_url=str(resp.url),
        status_code=resp.status_code,
        html=raw_html,
        title=_extract_title(raw_html),
        text=text,
    )


def fetcher_for(settings: Settings):
    """Bind :func:`fetch_page` to the configured user agent, timeout and text cap."""

    async def fetch(url: str, user_agent: str | None = None, accept_language: str | None = None) -> FetchResult:
        return await fetch_page(
            url,
            user_agent=user_agent or settings.user_agent,
            accept_language=accept_language,
            timeout=settings.fetch_timeout_seconds,
            max_text=settings.max_text_chars,
        )
    return fetch

"""Web page helpers for harvesting free-text location mentions."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple
from urllib import robotparser
from urllib.parse import urlparse, urlunparse

import phonenumbers
import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

USER_AGENT = "POIDiscoveryBot/1.0 (+https://example.org/bot)"
REQUEST_TIMEOUT = 10
BLOCK_TAGS = ["p", "li", "h1", "h2", "h3", "h4", "address", "td", "blockquote"]
STRIP_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "form"]
MIN_BLOCK_LENGTH = 20
MAX_BLOCK_LENGTH = 600


def sanitize_website(raw_url: Optional[str]) -> Optional[str]:
    """Absolute https URL without query or fragment, or None for values that are not hosts."""
    candidate = str(raw_url or "").strip()
    if not candidate:
        return None

    parts = urlparse(candidate, scheme="https")
    if not parts.netloc:
        # Bare hosts such as "example.com/menu" parse as a path.
        parts = urlparse("https://" + candidate)

    host = parts.netloc
    if not host or " " in host or "." not in host:
        return None

    path = parts.path if parts.path.startswith("/") else "/" + parts.path
    return urlunparse(("https", host, path, "", "", ""))


def normalize_phone(raw: Optional[str], default_region: Optional[str] = None) -> Optional[str]:
    """Return an E.164 phone string, or None when the value is not a possible number."""
    if not raw or not str(raw).strip():
        return None
    try:
        parsed = phonenumbers.parse(str(raw).strip(), default_region or None)
    except phonenumbers.NumberParseException:
        return None

    if not phonenumbers.is_possible_number(parsed):
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def build_session() -> requests.Session:
    session = requests.Session()
    session.headers.setdefault("User-Agent", USER_AGENT)
    session.headers.setdefault("Accept", "text/html,application/xhtml+xml")
    session.headers.setdefault("Accept-Language", "en-US,en;q=0.9")
    return session


def fetch_url(session: requests.Session, url: str, *, timeout: float = REQUEST_TIMEOUT) -> Optional[Tuple[str, BeautifulSoup]]:
    """``(final_url, soup)`` for an HTML page; None on HTTP errors or other content types."""
    try:
        response = session.get(url, timeout=timeout, allow_redirects=True)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Could not fetch %s: %s", url, exc)
        return None

    content_type = (response.headers.get("Content-Type") or "").lower()
    if "text/html" not in content_type:
        logger.debug("Ignoring %s: not an HTML page (%s)", url, content_type or "no content type")
        return None
    return response.url or url, BeautifulSoup(response.text, "html.parser")


class RobotsPolicy:
    """Per-origin robots.txt rules, loaded once through the harvesting session."""

    def __init__(self, session: requests.Session, *, user_agent: str = USER_AGENT, timeout: float = REQUEST_TIMEOUT) -> None:
        self.session = session
        self.user_agent = user_agent
        self.timeout = timeout
        self._rules: Dict[str, Optional[robotparser.RobotFileParser]] = {}

    def _load(self, origin: str) -> Optional[robotparser.RobotFileParser]:
        robots_url = f"{origin}/robots.txt"
        try:
            response = self.session.get(robots_url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.debug("Unable to read robots.txt from %s: %s", robots_url, exc)
            return None
        if response.status_code >= 400:
            return None
        parser_obj = robotparser.RobotFileParser()
        parser_obj.set_url(robots_url)
        parser_obj.parse(response.text.splitlines())
        return parser_obj

    def allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        origin = urlunparse((parsed.scheme, parsed.netloc, "", "", "", ""))
        if origin not in self._rules:
            self._rules[origin] = self._load(origin)
        rules = self._rules[origin]
        if rules is None:
            return True
        allowed = rules.can_fetch(self.user_agent, url)
        if not allowed:
            logger.info("Robots.txt disallows %s", url)
        return allowed


def _summarize_text(text: str, *, max_length: int = MAX_BLOCK_LENGTH) -> Optional[str]:
    """Collapse whitespace and cut long blocks at a word boundary."""
    words = (text or "").split()
    if not words:
        return None
    cleaned = " ".join(words)
    if len(cleaned) <= max_length:
        return cleaned
    head, _, _ = cleaned[: max_length + 1].rpartition(" ")
    return (head or cleaned[:max_length]).rstrip(". ") + "..."


def extract_text_blocks(
    soup: BeautifulSoup,
    keywords: Iterable[str] = (),
    *,
    min_length: int = MIN_BLOCK_LENGTH,
) -> List[str]:
    """Split a page into readable text blocks, keeping those that mention a keyword."""
    for tag in soup.find_all(STRIP_TAGS):
        tag.decompose()

    lowered_keywords = [keyword.lower() for keyword in keywords if keyword]
    blocks: List[str] = []
    seen = set()
    for node in soup.find_all(BLOCK_TAGS):
        # Nested block tags are reported by their innermost element only.
        if node.find(BLOCK_TAGS):
            continue
        text = _summarize_text(node.get_text(" ", strip=True))
        if not text or len(text) < min_length:
            continue
        lowered = text.lower()
        if lowered_keywords and not any(keyword in lowered for keyword in lowered_keywords):
            continue
        if lowered in seen:
            continue
        seen.add(lowered)
        blocks.append(text)
    return blocks

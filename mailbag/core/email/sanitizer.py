"""
HTML sanitization for message bodies rendered by the browser client.
"""
import logging
import re

from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

# Removed together with their content
BLOCKED_TAGS = [
    "script", "style", "iframe", "frame", "frameset", "object", "embed",
    "applet", "form", "input", "button", "select", "textarea", "link",
    "meta", "base", "svg", "math",
]

URL_ATTRIBUTES = {"href", "src", "action", "formaction", "background", "poster", "xlink:href"}

_UNSAFE_URL = re.compile(r"^\s*(javascript|vbscript|data)\s*:", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x20]+")


def _is_unsafe_url(value: str) -> bool:
    # Browsers ignore embedded whitespace/control chars in the scheme ("java\tscript:")
    return bool(_UNSAFE_URL.match(_CONTROL_CHARS.sub("", value)))


def _is_tracking_pixel(tag) -> bool:
    return str(tag.get("width", "")).strip() in ("0", "1") and \
        str(tag.get("height", "")).strip() in ("0", "1")


def sanitize_html(html: str) -> str:
    """
    Strip active content from an HTML body.

    Removes scripts, styles, frames, embedded objects and forms, every `on*`
    event handler, `javascript:`/`vbscript:`/`data:` URLs, and 1x1 tracking
    images. The document structure and remaining markup are kept.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(BLOCKED_TAGS):
        tag.decompose()

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all("img"):
        if _is_tracking_pixel(tag):
            tag.decompose()

    removed = 0
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            value = tag.attrs[attr]
            if isinstance(value, list):
                value = " ".join(value)
            if name.startswith("on"):
                del tag.attrs[attr]
                removed += 1
            elif name in URL_ATTRIBUTES and _is_unsafe_url(str(value)):
                del tag.attrs[attr]
                removed += 1
            elif name == "style" and re.search(r"expression\s*\(|url\s*\(\s*['\"]?\s*javascript:", str(value), re.I):
                del tag.attrs[attr]
                removed += 1

    if removed:
        logger.debug(f"Removed {removed} unsafe attributes from HTML body")

    return str(soup)


def html_to_text(html: str) -> str:
    """Plain-text rendering of an HTML body (used for multipart/alternative)."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text("\n")
    while "\n\n\n" in text:
        text = text.replace("\n\n\n", "\n\n")
    return text.strip()

"""
Safe text extraction from fetched HTML.

Page authors can hide text from human readers that a naive scraper would still
pick up; hidden text is a common prompt-injection vector. Everything invisible
is stripped before the main content region is read.
"""
from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup, Comment, Tag

DEFAULT_MAX_LENGTH = 5000

STRIPPED_TAGS = ["script", "style", "noscript", "iframe", "nav", "footer", "header"]

HIDDEN_CLASS_PATTERNS = [
    "hidden",
    "d-none",
    "invisible",
    "sr-only",
    "screen-reader-only",
    "visually-hidden",
    "offscreen",
    "clip",
]

MAIN_CONTENT_SELECTORS = ["main", "article", '[role="main"]', ".content", "#content", "body"]

_ZERO_LENGTH = re.compile(r"^[+-]?0*\.?0+[a-z%]*$")
_WHITESPACE = re.compile(r"\s+")


def _parse_style(style: str) -> dict[str, str]:
    declarations: dict[str, str] = {}
    for part in style.split(";"):
        if ":" not in part:
            continue
        prop, _, value = part.partition(":")
        value = value.replace("!important", "")
        declarations[prop.strip().lower()] = re.sub(r"\s+", "", value.lower())
    return declarations


def _is_zero(value: Optional[str]) -> bool:
    return bool(value) and bool(_ZERO_LENGTH.match(value))


def is_invisible_style(style: str) -> bool:
    """True when an inline style hides the element or shrinks it to nothing."""
    decl = _parse_style(style)

    if decl.get("display") == "none":
        return True
    if decl.get("visibility") == "hidden":
        return True
    if _is_zero(decl.get("opacity")):
        return True
    if _is_zero(decl.get("font-size")):
        return True
    if _is_zero(decl.get("height")) or _is_zero(decl.get("width")):
        return True
    if decl.get("overflow") == "hidden" and _is_zero(decl.get("max-height")):
        return True
    if decl.get("position") == "absolute" and (
        decl.get("left", "").startswith("-") or decl.get("top", "").startswith("-")
    ):
        return True
    if decl.get("clip", "").startswith("rect(0"):
        return True
    return False


def _remove_all(tags) -> None:
    for tag in list(tags):
        if not tag.decomposed:
            tag.decompose()


def sanitize_html(soup: BeautifulSoup) -> None:
    """Strip non-content and invisible elements from `soup` in place."""
    # 1. non-content elements
    _remove_all(soup.find_all(STRIPPED_TAGS))

    # 2. comments
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    # 3. hidden attributes
    _remove_all(soup.select('[hidden], [aria-hidden="true"]'))

    # 4. invisible inline styles
    _remove_all(
        tag
        for tag in soup.find_all(style=True)
        if isinstance(tag, Tag) and is_invisible_style(tag.get("style") or "")
    )

    # 5. common visually-hidden utility classes
    _remove_all(soup.select(", ".join(f".{c}" for c in HIDDEN_CLASS_PATTERNS)))

    # 6. hidden form inputs
    _remove_all(soup.select('input[type="hidden"]'))


def extract_safe_text(markup: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Visible main-content text of `markup`, whitespace-collapsed and truncated
    to `max_length` characters.
    """
    if not markup:
        return ""

    soup = BeautifulSoup(markup, "lxml")
    sanitize_html(soup)

    region = None
    for selector in MAIN_CONTENT_SELECTORS:
        region = soup.select_one(selector)
        if region is not None:
            break

    text = (region or soup).get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()[:max_length]

"""
Prompt sanitization for untrusted text.

Everything that ends up inside a model prompt (page text, PDF text, user notes,
search snippets) goes through `sanitize_for_prompt` first.
"""
from __future__ import annotations

import re
from typing import Dict, Mapping, Optional
from urllib.parse import urlparse

DEFAULT_MAX_LENGTH = 5000

# Control characters except \t, \n and \r
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_EXCESS_NEWLINES = re.compile(r"\n{4,}")
_SPECIAL_CHAR_RUN = re.compile(r"[`\-=]{10,}")
_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")

DELIMITER_REPLACEMENTS = [
    ("```", "` ` `"),
    ("---", "- - -"),
    ("===", "= = ="),
]

INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:(?:previous|all|above|prior)\s+)+(instructions?|prompts?|rules?|context)", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all|previous|above)", re.IGNORECASE),
    re.compile(r"disregard\s+(?:(?:previous|all|above|prior)\s+)+(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"system\s+(prompt|role|message|instructions?):", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(a|an)\s+", re.IGNORECASE),
]

# Only reported, never rewritten
SUSPICIOUS_PATTERNS = INJECTION_PATTERNS + [
    re.compile(r"reset\s+(your|the)\s+(instructions?|context|memory)", re.IGNORECASE),
    re.compile(r"override\s+(previous|all|system)\s+(instructions?|rules?|settings?)", re.IGNORECASE),
]


def _interleave_spaces(match: re.Match) -> str:
    return " ".join(match.group(0))


def sanitize_for_prompt(text: Optional[str], max_length: int = DEFAULT_MAX_LENGTH) -> str:
    if not text or not isinstance(text, str):
        return ""

    sanitized = text[:max_length]
    sanitized = _CONTROL_CHARS.sub("", sanitized)

    for delimiter, replacement in DELIMITER_REPLACEMENTS:
        sanitized = sanitized.replace(delimiter, replacement)

    sanitized = _EXCESS_NEWLINES.sub("\n\n", sanitized)

    for pattern in INJECTION_PATTERNS:
        sanitized = pattern.sub(_interleave_spaces, sanitized)

    return sanitized.strip()


def sanitize_multiple_inputs(
    inputs: Mapping[str, Optional[str]],
    max_length: int = DEFAULT_MAX_LENGTH,
) -> Dict[str, str]:
    return {key: sanitize_for_prompt(value, max_length) for key, value in inputs.items()}


def fill_placeholders(template: str, values: Mapping[str, str]) -> str:
    """
    Substitute `${key}` placeholders in one pass, so a placeholder that appears
    inside a value is left as literal text. Unknown keys are kept.
    """
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def safe_prompt_replace(
    template: str,
    replacements: Mapping[str, Optional[str]],
    max_length: int = DEFAULT_MAX_LENGTH,
) -> str:
    """Fill `${key}` placeholders in `template` with sanitized values."""
    return fill_placeholders(
        template,
        {key: sanitize_for_prompt(value, max_length) for key, value in replacements.items()},
    )


def is_safe_url_for_prompt(url: Optional[str]) -> bool:
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def detect_injection_attempt(text: Optional[str]) -> bool:
    """Report (without modifying) text that looks like a prompt-injection attempt."""
    if not text or not isinstance(text, str):
        return False
    if any(pattern.search(text) for pattern in SUSPICIOUS_PATTERNS):
        return True
    return bool(_SPECIAL_CHAR_RUN.search(text))

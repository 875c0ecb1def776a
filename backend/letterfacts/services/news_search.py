# backend/letterfacts/services/news_search.py
from __future__ import annotations

import logging
import re
import textwrap
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .connectors.base import SearchConnector
from .connectors.google_search import GoogleSearchConnector
from .llm import LLMClient, get_llm
from .prompt_sanitizer import safe_prompt_replace

logger = logging.getLogger(__name__)

# Index / listing page vocabulary. Matched after all whitespace is removed.
NOISE_PATTERNS = [
    re.compile(p)
    for p in (
        r"一覧",
        r"まとめ",
        r"アーカイブ",
        r"バックナンバー",
        r"ニュースリリース",
        r"プレスリリース一覧",
        r"プレスリリース",
        r"お知らせ一覧",
        r"お知らせ",
        r"ニュース一覧",
        r"記事一覧",
        r"トピックス一覧",
        r"新着",
        r"更新履歴",
        r"イベント一覧",
        r"カテゴリ",
        r"タグ",
        r"サイトマップ",
    )
]

QUERY_EXCLUSIONS = [
    "一覧",
    "まとめ",
    "アーカイブ",
    "リスト",
    "ニュース一覧",
    "プレスリリース一覧",
    "お知らせ一覧",
    "バックナンバー",
    "サイトマップ",
]

MAX_CANDIDATES_CHARS = 4000
MAX_COMPANY_NAME_CHARS = 200

_WHITESPACE = re.compile(r"\s+")
_CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)
_BULLET_PREFIX = re.compile(r"^[-*•\s]+")

FACT_BULLET = "・"

NEWS_FACTS_PROMPT = textwrap.dedent(
    """
    あなたは企業ニュースのファクト抽出担当です。以下の検索結果から、具体的な事実のみを抽出してください。

    【対象企業】
    ${company_name}

    【検索結果（タイトル/概要/URL）】
    ${candidates}

    【抽出する内容】
    - 具体的な取り組み（新規事業、提携、投資、事業拡大など）
    - 数値（売上、成長率、調達額、出荷数、導入社数など）
    - 新商品・新サービス名

    【禁止事項】
    - 「一覧」「まとめ」「アーカイブ」「お知らせ」などのメタ情報
    - 「〜のお知らせ一覧です」のような説明文
    - 根拠が曖昧な推測

    【出力形式】
    - 1行につき1ファクト
    - 箇条書き（「・」から始める）
    - ファクトが無い場合は空文字で返す
    """
).strip()


def is_noise_text(text: Optional[str]) -> bool:
    if not text:
        return False
    compact = _WHITESPACE.sub("", text)
    return any(pattern.search(compact) for pattern in NOISE_PATTERNS)


def is_noise_item(item: Mapping[str, Any]) -> bool:
    combined = f"{item.get('title') or ''} {item.get('snippet') or ''}"
    return is_noise_text(combined)


def filter_facts(items: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Drop search results that look like listing/archive pages."""
    return [item for item in items if not is_noise_item(item)]


def build_query(company_name: str) -> str:
    exclusions = " ".join(f"-{keyword}" for keyword in QUERY_EXCLUSIONS)
    return f"{company_name} 最新 ニュース プレスリリース {exclusions}"


def normalize_fact_lines(text: Optional[str]) -> str:
    """
    Clean free-form model output into one `・`-prefixed fact per line.
    Code fences, bullets of any style and noise lines are removed.
    """
    if not text:
        return ""
    cleaned = _CODE_FENCE.sub("", text).strip()
    if not cleaned:
        return ""

    lines: List[str] = []
    for raw in cleaned.split("\n"):
        line = raw.strip()
        if not line:
            continue
        line = _BULLET_PREFIX.sub("", line)
        if not line or is_noise_text(line):
            continue
        lines.append(line if line.startswith(FACT_BULLET) else f"{FACT_BULLET}{line}")
    return "\n".join(lines)


def _candidates_block(items: Iterable[Mapping[str, Any]]) -> str:
    blocks = [
        f"タイトル: {item.get('title') or ''}\n"
        f"概要: {item.get('snippet') or ''}\n"
        f"URL: {item.get('link') or ''}"
        for item in items
    ]
    return "\n\n".join(blocks)[:MAX_CANDIDATES_CHARS]


async def search_news_facts(
    company_name: str,
    *,
    search: Optional[SearchConnector] = None,
    llm: Optional[LLMClient] = None,
) -> str:
    """
    Search recent news for `company_name` and return cleaned fact lines.

    Raises ConnectorNotConfiguredError / ConnectorError from the search
    connector and ExtractionError from the model call; an empty string means
    nothing usable survived the noise filter.
    """
    search = search or GoogleSearchConnector()

    items: List[Dict[str, Any]] = await search.search(build_query(company_name))
    usable = filter_facts(items)
    logger.info(
        "News search kept %d of %d results",
        len(usable),
        len(items),
        extra={"connector": search.name},
    )
    if not usable:
        return ""

    prompt = safe_prompt_replace(
        NEWS_FACTS_PROMPT,
        {
            "company_name": company_name[:MAX_COMPANY_NAME_CHARS],
            "candidates": _candidates_block(usable),
        },
    )
    llm = llm or get_llm()
    raw = await llm.generate_text(prompt)
    return normalize_fact_lines(raw)

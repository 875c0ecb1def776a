"""
Fact Selection for Letter Generation

Scores every extracted fact against the outreach context and picks a small,
category-diverse subset (at most three) for the letter writer. Each selected
fact carries a `quote_key` used afterwards to check that the generated prose
actually cites it.

Everything here is deterministic keyword arithmetic over already-extracted
facts; no model is called.
"""
from __future__ import annotations

import re
import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional, Tuple

from ..schemas.analysis import (
    CategorizedFacts,
    ExtractedFactItem,
    FactCategory,
    FactItem,
    FactSelectionResult,
    SelectedFact,
    SourceCategory,
    TopicTag,
)

logger = logging.getLogger(__name__)

MAX_SELECTED_FACTS = 3
MAX_SCORE = 100


# ---------------------------------------------------------------------------
# Scoring tables
# ---------------------------------------------------------------------------

# Facts containing any of these are unsuitable for a business letter and are
# excluded outright (award ceremonies, shareholder perks, IR events).
NG_KEYWORDS = [
    "多様性表彰",
    "ワールドプレミア",
    "製品発表会",
    "株主優待",
    "優待",
    "配当",
    "決算説明会",
    "株主総会",
    "授賞式",
    "受賞",
    "アワード",
]

# Flattening order; ties after sorting keep this order.
CATEGORY_ORDER: Tuple[FactCategory, ...] = (
    FactCategory.RECENT_MOVES,
    FactCategory.COMPANY_DIRECTION,
    FactCategory.NUMBERS,
    FactCategory.HIRING_TRENDS,
    FactCategory.PROPER_NOUNS,
)

CATEGORY_BASE_WEIGHTS: dict[FactCategory, int] = {
    FactCategory.RECENT_MOVES: 50,
    FactCategory.COMPANY_DIRECTION: 40,
    FactCategory.NUMBERS: 30,
    FactCategory.HIRING_TRENDS: 20,
    FactCategory.PROPER_NOUNS: 10,
}

# Governance / strategy vocabulary an executive reader responds to.
CXO_KEYWORDS = [
    "ガバナンス",
    "経営",
    "管理",
    "統制",
    "監査",
    "コンプライアンス",
    "組織",
    "人権",
    "グローバル",
    "サステナビリティ",
    "ESG",
    "カーボンニュートラル",
    "DX",
    "デジタル",
    "業務改革",
    "BPR",
    "リスク",
    "内部統制",
    # public sector / municipalities
    "行政改革",
    "住民サービス",
    "官民連携",
    "デジタル庁",
    "自治体DX",
    "電子行政",
    "スマートシティ",
    "公共調達",
    "行政手続",
    "マイナンバー",
]

CXO_KEYWORD_BONUS = 15
ROLE_MATCH_BONUS = 20
PRODUCT_FIT_BONUS = 20
NUMERIC_BONUS = 10

# quote_key tables, searched in order
ACTION_KEYWORDS = ["提携", "M&A", "買収", "合併", "リリース", "発表", "開始", "設立"]

DIRECTION_KEYWORDS = [
    "カーボンニュートラル",
    "DX",
    "デジタル",
    "サステナビリティ",
    "グローバル",
    "ESG",
    "経営",
    "ビジョン",
    "中期経営",
    "成長戦略",
]

JOB_FUNCTION_KEYWORDS = ["経営企画", "管理", "DX", "人事", "財務", "IT", "エンジニア", "営業"]

TOPIC_TAG_KEYWORDS: dict[str, list[str]] = {
    "governance": ["ガバナンス", "内部統制", "取締役会", "監査", "統制"],
    "compliance": ["コンプライアンス", "法令遵守", "規制", "適正", "不正防止"],
    "supply_chain": ["サプライチェーン", "調達", "物流", "SCM", "供給"],
    "finance_ops": ["財務", "経理", "会計", "決算", "予算", "連結"],
    "digital_transformation": [
        "DX", "デジタル", "IT", "AI", "クラウド", "自動化", "RPA",
        "自治体DX", "デジタル庁", "電子行政", "スマートシティ",
    ],
    "sustainability": ["サステナビリティ", "ESG", "カーボンニュートラル", "脱炭素", "環境", "SDGs"],
    "global_expansion": ["グローバル", "海外", "国際", "進出", "越境"],
    "hr_organization": ["人事", "組織", "採用", "人材", "タレント", "働き方"],
    "risk_management": ["リスク", "BCP", "危機管理", "セキュリティ", "情報管理"],
    "growth_strategy": ["成長", "M&A", "新規事業", "投資", "戦略", "行政改革", "官民連携", "公共調達"],
}

TOPIC_BRIDGE_REASONS: dict[str, str] = {
    "governance": "経営体制の強化に関連",
    "compliance": "コンプライアンス体制の整備に関連",
    "supply_chain": "サプライチェーン最適化に関連",
    "finance_ops": "財務・経理業務の効率化に関連",
    "digital_transformation": "デジタル変革の推進に関連",
    "sustainability": "サステナビリティ経営に関連",
    "global_expansion": "グローバル展開の課題に関連",
    "hr_organization": "組織・人材戦略に関連",
    "risk_management": "リスク管理体制の強化に関連",
    "growth_strategy": "成長戦略の実現に関連",
}
DEFAULT_BRIDGE_REASON = "経営課題の解決に関連"

MID_TERM_PLAN_MARKERS = ["[中計]", "中期経営計画", "中期計画", "長期ビジョン", "経営計画"]

# Hiragana, katakana and CJK unified ideographs; ASCII letters
_CJK_RUN = re.compile(r"[぀-ゟ゠-ヿ一-鿿]{2,}")
_LATIN_RUN = re.compile(r"[A-Za-z]{3,}")

_DIGIT = re.compile(r"[0-9]")
_DIGIT_RUN = re.compile(r"[0-9][0-9,]*")
_YEAR_TOKEN = re.compile(r"[0-9]{4}年")
_QUANTITY = re.compile(r"[0-9,]+[%％万億件社名]")

_DATE_PATTERNS = [
    re.compile(r"([0-9]{4})年([0-9]{1,2})月"),
    re.compile(r"([0-9]{4})/([0-9]{1,2})"),
    re.compile(r"([0-9]{4})-([0-9]{1,2})"),
    re.compile(r"([0-9]{4})年"),
]
_REIWA = re.compile(r"令和([0-9]+)年")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Candidate:
    content: str
    category: FactCategory
    source_url: Optional[str] = None
    source_title: Optional[str] = None
    source_category: Optional[SourceCategory] = None


def extract_keywords(text: Optional[str]) -> List[str]:
    """
    Split free text into crude keywords: CJK runs of 2+ characters first,
    then Latin runs of 3+ letters.
    """
    if not text:
        return []
    return _CJK_RUN.findall(text) + _LATIN_RUN.findall(text)


def contains_ng_keyword(content: str) -> bool:
    return any(keyword in content for keyword in NG_KEYWORDS)


def _normalize_item(item: FactItem, category: FactCategory) -> _Candidate:
    if isinstance(item, ExtractedFactItem):
        return _Candidate(
            content=item.content,
            category=category,
            source_url=item.source,
            source_title=item.source_title,
            source_category=item.source_category,
        )
    return _Candidate(content=item, category=category)


def _flatten(facts: CategorizedFacts) -> List[_Candidate]:
    candidates: List[_Candidate] = []
    for category in CATEGORY_ORDER:
        for item in facts.items_for(category):
            candidate = _normalize_item(item, category)
            if not candidate.content.strip():
                continue
            if contains_ng_keyword(candidate.content):
                logger.debug("Dropping NG fact: %s", candidate.content[:40])
                continue
            candidates.append(candidate)
    return candidates


def _any_keyword_in(content: str, keywords: Iterable[str]) -> List[str]:
    lowered = content.lower()
    return [k for k in keywords if k.lower() in lowered]


def calculate_relevance_score(
    content: str,
    category: FactCategory,
    target_role: Optional[str] = None,
    product_strength: Optional[str] = None,
    target_challenges: Optional[str] = None,
) -> Tuple[int, str]:
    """Return (score capped at 100, human-readable reason)."""
    score = CATEGORY_BASE_WEIGHTS[category]
    reasons = [f"category: {category.value}"]

    cxo_hits = [k for k in CXO_KEYWORDS if k in content]
    if cxo_hits:
        score += CXO_KEYWORD_BONUS * len(cxo_hits)
        reasons.append(f"cxo keywords: {', '.join(cxo_hits)}")

    if target_role:
        role_hits = _any_keyword_in(content, extract_keywords(target_role))
        if role_hits:
            score += ROLE_MATCH_BONUS
            reasons.append(f"role match: {', '.join(role_hits)}")

    fit_keywords = extract_keywords(product_strength) + extract_keywords(target_challenges)
    fit_hits = _any_keyword_in(content, fit_keywords)
    if fit_hits:
        score += PRODUCT_FIT_BONUS
        reasons.append(f"product fit: {', '.join(fit_hits)}")

    if _DIGIT.search(content):
        score += NUMERIC_BONUS
        reasons.append("contains figures")

    return min(MAX_SCORE, score), " / ".join(reasons)


def _first_keyword(content: str, keywords: Iterable[str]) -> Optional[str]:
    for keyword in keywords:
        if keyword in content:
            return keyword
    return None


def generate_quote_key(content: str, category: FactCategory) -> str:
    """
    Short excerpt a letter must contain to count as citing this fact.
    Pure function of (content, category).
    """
    if category == FactCategory.NUMBERS:
        match = _DIGIT_RUN.search(content)
        if match:
            return match.group(0).replace(",", "")
        return content[:20]

    if category == FactCategory.PROPER_NOUNS:
        return content[:30]

    if category == FactCategory.RECENT_MOVES:
        match = _YEAR_TOKEN.search(content)
        if match:
            return match.group(0)
        return _first_keyword(content, ACTION_KEYWORDS) or content[:15]

    if category == FactCategory.COMPANY_DIRECTION:
        return _first_keyword(content, DIRECTION_KEYWORDS) or content[:15]

    if category == FactCategory.HIRING_TRENDS:
        return _first_keyword(content, JOB_FUNCTION_KEYWORDS) or content[:15]

    return content[:20]


# ---------------------------------------------------------------------------
# Informational annotations
# ---------------------------------------------------------------------------

def parse_fact_date(content: str) -> Optional[date]:
    """First year(/month) mentioned in the fact, including Reiwa era years."""
    for pattern in _DATE_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        year = int(match.group(1))
        month = int(match.group(2)) if match.lastindex and match.lastindex >= 2 else 1
        if 2000 <= year <= 2100 and 1 <= month <= 12:
            return date(year, month, 1)

    reiwa = _REIWA.search(content)
    if reiwa:
        return date(2018 + int(reiwa.group(1)), 1, 1)
    return None


def is_mid_term_plan(content: str) -> bool:
    return any(marker in content for marker in MID_TERM_PLAN_MARKERS)


def assign_topic_tags(content: str) -> List[TopicTag]:
    lowered = content.lower()
    tags: List[TopicTag] = [
        tag
        for tag, keywords in TOPIC_TAG_KEYWORDS.items()
        if any(k.lower() in lowered for k in keywords)
    ]
    return tags or ["other"]


def generate_bridge_reason(
    content: str,
    topic_tags: List[TopicTag],
    proposal_theme: Optional[str] = None,
) -> str:
    """How the fact connects to the proposal, for the letter writer."""
    if proposal_theme:
        return f"「{content[:30]}...」の取り組みは、{proposal_theme}に貢献可能"
    if topic_tags:
        return TOPIC_BRIDGE_REASONS.get(topic_tags[0], DEFAULT_BRIDGE_REASON)
    return DEFAULT_BRIDGE_REASON


def calculate_bridge_confidence(
    content: str,
    topic_tags: List[TopicTag],
    proposal_theme: Optional[str] = None,
) -> int:
    confidence = 50
    if topic_tags and topic_tags[0] != "other":
        confidence += 15
    if len(topic_tags) >= 2:
        confidence += 10
    if proposal_theme:
        theme = proposal_theme.lower()
        lowered = content.lower()
        if theme in lowered or lowered[:20] in theme:
            confidence += 20
    if _QUANTITY.search(content):
        confidence += 10
    return min(MAX_SCORE, confidence)


def _to_selected_fact(
    candidate: _Candidate,
    score: int,
    reason: str,
    proposal_theme: Optional[str],
) -> SelectedFact:
    tags = assign_topic_tags(candidate.content)
    published = parse_fact_date(candidate.content)
    return SelectedFact(
        content=candidate.content,
        category=candidate.category,
        relevance_score=score,
        reason=reason,
        quote_key=generate_quote_key(candidate.content, candidate.category),
        topic_tags=tags,
        bridge_reason=generate_bridge_reason(candidate.content, tags, proposal_theme),
        confidence=calculate_bridge_confidence(candidate.content, tags, proposal_theme),
        published_at=f"{published.year}年{published.month}月" if published else None,
        is_mid_term_plan=is_mid_term_plan(candidate.content),
        source_url=candidate.source_url,
        source_title=candidate.source_title,
        source_category=candidate.source_category,
    )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def select_facts(
    facts: Optional[CategorizedFacts],
    target_role: Optional[str] = None,
    product_strength: Optional[str] = None,
    target_challenges: Optional[str] = None,
    proposal_theme: Optional[str] = None,
) -> FactSelectionResult:
    """
    Pick up to three facts for the letter, preferring one per category.

    `proposal_theme` only shapes the informational bridge annotations.
    """
    if facts is None:
        return FactSelectionResult()

    scored: List[SelectedFact] = []
    for candidate in _flatten(facts):
        score, reason = calculate_relevance_score(
            candidate.content,
            candidate.category,
            target_role=target_role,
            product_strength=product_strength,
            target_challenges=target_challenges,
        )
        scored.append(_to_selected_fact(candidate, score, reason, proposal_theme))

    # sorted() is stable, so equal scores keep flattening order
    ranked = sorted(scored, key=lambda f: f.relevance_score, reverse=True)

    picked: List[int] = []
    used_categories: set[FactCategory] = set()
    for idx, fact in enumerate(ranked):
        if len(picked) >= MAX_SELECTED_FACTS:
            break
        if fact.category not in used_categories:
            picked.append(idx)
            used_categories.add(fact.category)

    for idx in range(len(ranked)):
        if len(picked) >= MAX_SELECTED_FACTS:
            break
        if idx not in picked:
            picked.append(idx)

    picked_set = set(picked)
    selected = [ranked[idx] for idx in picked]
    rejected = [fact for idx, fact in enumerate(ranked) if idx not in picked_set]

    logger.debug(
        "Selected %d of %d fact candidates", len(selected), len(ranked)
    )
    return FactSelectionResult(selected=selected, rejected=rejected)

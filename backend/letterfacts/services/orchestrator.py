from __future__ import annotations

import asyncio
import logging
import re
import textwrap
import uuid
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from ..core.config import get_settings
from ..schemas.analysis import (
    AnalysisDraft,
    AnalysisResult,
    CachedUrlData,
    CategorizedFacts,
    Hypotheses,
    InformationSource,
    MissingInfo,
    RiskFlag,
    SenderInfo,
    SourceCategory,
)
from .connectors import get_web_fetcher
from .connectors.web_page import WebPageFetcher
from .fact_selector import select_facts
from .html_sanitizer import extract_safe_text
from .llm import LLMClient, get_llm
from .prompt_sanitizer import (
    detect_injection_attempt,
    fill_placeholders,
    safe_prompt_replace,
    sanitize_for_prompt,
)
from .url_cache import TwoTierCache, get_url_cache

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    NO_INPUT = "NO_INPUT"
    CACHE_CHECK = "CACHE_CHECK"
    CACHE_HIT = "CACHE_HIT"
    FETCH = "FETCH"
    EXTRACT = "EXTRACT"
    SELECT = "SELECT"
    RESULT = "RESULT"


SUB_ROUTE_CANDIDATES = [
    "/about",
    "/company",
    "/recruit",
    "/careers",
    "/news",
    "/press",
    "/ir",
    "/service",
    "/product",
]
MAX_PAGES = 4
MAX_SOURCES = 8
PRIMARY_SOURCES = 3

MAX_PAGE_TEXT_CHARS = 8000
MIN_MAIN_TEXT_CHARS = 100
MAX_FACT_PROMPT_CHARS = 12000
MAX_PDF_TEXT_CHARS = 5000
MAX_ANALYSIS_CONTENT_CHARS = 8000

PLACEHOLDER_HYPOTHESIS = "情報不足のため特定できません"
DEFAULT_CTA = "15分だけ情報交換させていただけますか"

NO_INPUT_MESSAGE = "入力情報がありません"
ANALYSIS_FAILED_MESSAGE = "AI分析に失敗しました。入力内容を確認してください。"
BUDGET_EXCEEDED_MESSAGE = "処理時間の上限を超えたため分析を中断しました"
THIN_PAGE_MESSAGE = "URLからテキストを十分に取得できませんでした"
FACT_EXTRACTION_FAILED_MESSAGE = "Webページからのファクト抽出に失敗しました"

MISSING_INPUT_SUGGESTIONS: Dict[str, str] = {
    "target_url": "ターゲット企業のURLを入力してください",
    "user_notes": "企業の課題や背景情報を入力してください",
}

# Lower sorts first
SOURCE_CATEGORY_PRIORITY: Dict[str, int] = {
    "news": 0,
    "ir": 1,
    "recruit": 2,
    "corporate": 3,
    "product": 4,
    "other": 5,
}

_SOURCE_PATH_RULES: List[tuple[SourceCategory, tuple[str, ...]]] = [
    ("corporate", ("/about", "/company", "/corporate")),
    ("news", ("/news", "/press", "/release")),
    ("recruit", ("/recruit", "/careers", "/job")),
    ("ir", ("/ir", "/investor")),
    ("product", ("/product", "/service", "/solution")),
]

_INDEX_PAGE = re.compile(r"/index\.html?$", re.IGNORECASE)

FACT_EXTRACTION_PROMPT = textwrap.dedent(
    """
    あなたはビジネスインテリジェンスの専門家です。以下の企業Webページのテキストから、セールスレター作成に有用なファクトを抽出してください。

    【Webページのテキスト】
    ${pages}

    【抽出する情報（各カテゴリ最大5件）】

    1. numbers（数値情報）:
       - 従業員数、拠点数、設立年数、売上高、成長率など
       - 例: "従業員1,500名", "全国32拠点", "創業50年"

    2. properNouns（固有名詞）:
       - 製品名、サービス名、ブランド名、主要取引先など

    3. recentMoves（最近の動き）:
       - 業務提携、M&A、新サービスリリース、資金調達など
       - 例: "2024年に〇〇社と業務提携"

    4. hiringTrends（採用動向）:
       - 積極採用中の職種、採用人数など
       - 例: "エンジニア積極採用中"

    5. companyDirection（会社の方向性）:
       - ビジョン、ミッション、重点領域など
       - 例: "AI活用を推進"

    【重要な指示】
    - 具体的な情報のみ抽出（曖昧な表現は除外）
    - 情報が見つからないカテゴリは空配列[]を返す
    - 嘘や推測は絶対に含めない

    【出力形式】
    JSON形式のみ：
    {
      "numbers": [],
      "properNouns": [],
      "recentMoves": [],
      "hiringTrends": [],
      "companyDirection": []
    }
    """
).strip()

ANALYSIS_PROMPT = textwrap.dedent(
    """
    あなたは企業分析とセールスレター戦略の専門家です。
    以下の情報を分析し、CxO向けセールスレターの構成に必要な情報を抽出してください。

    【重要ルール】
    - 入力情報から読み取れた事実のみを抽出する
    - 推測は hypotheses（仮説）として明示する
    - 確認できない情報は missing_info に記載する
    - 架空の数字や事例は絶対に作成しない

    【収集した情報】
    ${content}

    ${sender}

    【出力形式】
    以下のJSON形式で出力してください：
    {
      "facts": {
        "company_name": "企業名（見つかれば）",
        "person_name": "担当者名（見つかれば）",
        "person_position": "役職（見つかれば）",
        "industry": "業界（見つかれば）",
        "company_size": "企業規模（見つかれば）",
        "recent_events": ["最近の出来事1", "最近の出来事2"]
      },
      "signals": [
        { "type": "growth|challenge|transformation|compliance|competition", "description": "経営シグナルの説明", "confidence": "high|medium|low" }
      ],
      "recent_news": [
        { "headline": "ニュース見出し", "summary": "要約", "date": "日付", "source_url": "URL" }
      ],
      "proof_points": [
        { "type": "numeric|case_study|news|inference", "content": "証拠の内容", "source": "出典", "confidence": "high|medium|low" }
      ],
      "hypotheses": {
        "timing_reason": "なぜ今連絡するのか（仮説）",
        "challenge_hypothesis": "経営課題の仮説",
        "value_proposition": "提供価値の仮説",
        "cta_suggestion": "軽量CTA提案"
      },
      "missing_info": [
        { "field": "フィールド名", "priority": "high|medium|low", "suggestion": "入力の提案" }
      ],
      "risk_flags": [
        { "type": "missing_info|stale_data|unverified|competitor_mention", "message": "警告メッセージ", "severity": "high|medium|low" }
      ]
    }
    """
).strip()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_sub_route_urls(base_url: str) -> List[str]:
    try:
        parsed = urlsplit(base_url)
    except ValueError:
        return []
    if not parsed.scheme or not parsed.netloc:
        return []
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return [f"{origin}{path}" for path in SUB_ROUTE_CANDIDATES]


def normalize_source_url(url: str) -> str:
    """Dedupe key for sources: origin + path without query, fragment, index page or trailing slashes."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url
    path = _INDEX_PAGE.sub("", parsed.path).rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc.lower()}{path}"


def detect_source_category(url: str) -> SourceCategory:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return "other"
    for category, markers in _SOURCE_PATH_RULES:
        if any(marker in path for marker in markers):
            return category
    return "other"


def prioritize_sources(sources: Sequence[InformationSource]) -> List[InformationSource]:
    """news > ir > recruit > corporate > product > other; titled first, then shorter URLs."""
    ranked = sorted(
        sources,
        key=lambda s: (
            SOURCE_CATEGORY_PRIORITY[s.category],
            0 if s.title else 1,
            len(s.url),
        ),
    )
    return [
        source.model_copy(update={"is_primary": idx < PRIMARY_SOURCES})
        for idx, source in enumerate(ranked[:MAX_SOURCES])
    ]


def build_safe_default(
    message: str,
    *,
    has_target_url: bool,
    has_user_notes: bool,
    risk_flags: Sequence[RiskFlag] = (),
    flag_type: str = "missing_info",
) -> AnalysisResult:
    """
    Well-formed empty result. Only inputs the caller did not supply are
    reported in `missing_info`; earlier risk flags are kept in order.
    """
    missing: List[MissingInfo] = []
    if not has_target_url:
        missing.append(
            MissingInfo(
                field="target_url",
                priority="high",
                suggestion=MISSING_INPUT_SUGGESTIONS["target_url"],
            )
        )
    if not has_user_notes:
        missing.append(
            MissingInfo(
                field="user_notes",
                priority="high",
                suggestion=MISSING_INPUT_SUGGESTIONS["user_notes"],
            )
        )

    return AnalysisResult(
        hypotheses=Hypotheses(
            timing_reason=PLACEHOLDER_HYPOTHESIS,
            challenge_hypothesis=PLACEHOLDER_HYPOTHESIS,
            value_proposition=PLACEHOLDER_HYPOTHESIS,
            cta_suggestion=DEFAULT_CTA,
        ),
        missing_info=missing,
        risk_flags=[*risk_flags, RiskFlag(type=flag_type, message=message, severity="high")],
    )


@dataclass
class PageFetch:
    url: str
    text: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.text is not None

    @property
    def blocked(self) -> bool:
        return self.status in (401, 403)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class AnalysisPipeline:
    """
    Sequences cache lookup, page fetching, fact extraction, the analysis
    draft call and fact selection for one request.

    `run_analysis` never raises: every failure ends in a well-formed
    AnalysisResult carrying risk flags.
    """

    def __init__(
        self,
        cache: TwoTierCache,
        fetcher: WebPageFetcher,
        llm: LLMClient,
        budget_seconds: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.llm = llm
        self.budget_seconds = (
            budget_seconds if budget_seconds is not None else get_settings().REQUEST_BUDGET_SECONDS
        )

    def _stage(self, stage: PipelineStage, request_id: str, msg: str = "", *args) -> None:
        logger.info(
            "[%s] " + (msg or "entered"),
            stage.value,
            *args,
            extra={"stage": stage.value, "request_id": request_id},
        )

    async def run_analysis(
        self,
        target_url: Optional[str] = None,
        pdf_text: Optional[str] = None,
        user_notes: Optional[str] = None,
        sender_info: Optional[SenderInfo] = None,
        request_id: Optional[str] = None,
    ) -> AnalysisResult:
        request_id = request_id or uuid.uuid4().hex
        target_url = (target_url or "").strip() or None
        user_notes = (user_notes or "").strip() or None
        pdf_text = (pdf_text or "").strip() or None

        # Shared with _run so flags raised before a timeout survive it
        flags: List[RiskFlag] = []
        try:
            return await asyncio.wait_for(
                self._run(target_url, pdf_text, user_notes, sender_info, flags, request_id),
                timeout=self.budget_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Analysis exceeded %.0fs budget",
                self.budget_seconds,
                extra={"request_id": request_id, "stage": PipelineStage.RESULT.value},
            )
            return build_safe_default(
                BUDGET_EXCEEDED_MESSAGE,
                has_target_url=target_url is not None,
                has_user_notes=user_notes is not None,
                risk_flags=flags,
                flag_type="unverified",
            )
        except Exception:
            logger.exception(
                "Analysis pipeline failed unexpectedly",
                extra={"request_id": request_id},
            )
            return build_safe_default(
                ANALYSIS_FAILED_MESSAGE,
                has_target_url=target_url is not None,
                has_user_notes=user_notes is not None,
                risk_flags=flags,
                flag_type="unverified",
            )

    async def _run(
        self,
        target_url: Optional[str],
        pdf_text: Optional[str],
        user_notes: Optional[str],
        sender_info: Optional[SenderInfo],
        flags: List[RiskFlag],
        request_id: str,
    ) -> AnalysisResult:
        url_data: Optional[CachedUrlData] = None
        if target_url:
            url_data = await self._analyze_url(target_url, flags, request_id)

        content = ""
        if url_data and url_data.extracted_content:
            content += f"【URL情報】\n{url_data.extracted_content}\n\n"
        if pdf_text:
            self._check_injection("pdf_text", pdf_text, request_id)
            content += f"【PDF情報】\n{pdf_text[:MAX_PDF_TEXT_CHARS]}\n\n"
        if user_notes:
            self._check_injection("user_notes", user_notes, request_id)
            content += f"【ユーザーメモ】\n{user_notes}\n\n"

        if not content.strip():
            self._stage(PipelineStage.NO_INPUT, request_id, "no usable input")
            return build_safe_default(
                NO_INPUT_MESSAGE,
                has_target_url=target_url is not None,
                has_user_notes=user_notes is not None,
                risk_flags=flags,
            )

        try:
            draft = await self.llm.generate_json(
                self._analysis_prompt(content, sender_info), AnalysisDraft, max_retries=1
            )
        except Exception as exc:
            logger.warning(
                "Analysis draft failed: %s",
                exc,
                extra={"request_id": request_id, "stage": PipelineStage.EXTRACT.value},
            )
            return build_safe_default(
                ANALYSIS_FAILED_MESSAGE,
                has_target_url=target_url is not None,
                has_user_notes=user_notes is not None,
                risk_flags=flags,
                flag_type="unverified",
            )

        extracted = url_data.extracted_facts if url_data else None
        self._stage(PipelineStage.SELECT, request_id)
        selection = select_facts(
            extracted,
            target_role=draft.facts.person_position,
            product_strength=sender_info.service_description if sender_info else None,
            target_challenges=draft.hypotheses.challenge_hypothesis,
            proposal_theme=draft.hypotheses.value_proposition,
        )

        payload = draft.model_dump()
        payload["risk_flags"] = [*draft.risk_flags, *flags]
        result = AnalysisResult(
            **payload,
            extracted_facts=extracted,
            selected_facts=selection.selected,
            sources=url_data.sources if url_data and url_data.sources else None,
            target_url=target_url,
        )
        self._stage(
            PipelineStage.RESULT,
            request_id,
            "%d selected facts, %d risk flags",
            len(result.selected_facts),
            len(result.risk_flags),
        )
        return result

    # -- URL stage ------------------------------------------------------------

    async def _analyze_url(
        self, target_url: str, flags: List[RiskFlag], request_id: str
    ) -> Optional[CachedUrlData]:
        self._stage(PipelineStage.CACHE_CHECK, request_id)
        cached = await self.cache.get(target_url)
        if cached is not None:
            try:
                data = CachedUrlData.model_validate(cached)
            except ValueError:
                logger.warning(
                    "Ignoring malformed cache entry",
                    extra={"request_id": request_id, "stage": PipelineStage.CACHE_CHECK.value},
                )
            else:
                self._stage(PipelineStage.CACHE_HIT, request_id)
                return data

        self._stage(PipelineStage.FETCH, request_id)
        sub_urls = build_sub_route_urls(target_url)
        main, *subs = await asyncio.gather(
            self._fetch_page(target_url, request_id),
            *(self._fetch_page(url, request_id) for url in sub_urls),
        )

        main_text = ""
        if main.ok:
            if len(main.text) < MIN_MAIN_TEXT_CHARS:
                flags.append(RiskFlag(type="missing_info", message=THIN_PAGE_MESSAGE, severity="medium"))
            else:
                main_text = main.text
        elif main.blocked:
            flags.append(
                RiskFlag(
                    type="missing_info",
                    message=f"URLへのアクセスが拒否されました (HTTP {main.status})",
                    severity="high",
                )
            )
        else:
            reason = main.error or f"HTTP {main.status}"
            flags.append(
                RiskFlag(type="missing_info", message=f"URL解析失敗: {reason}", severity="high")
            )

        # Sub-routes are tried even when the main page failed
        pages: List[PageFetch] = [main] if main.ok and main.text else []
        for page in subs:
            if len(pages) >= MAX_PAGES:
                break
            if page.ok and page.text:
                pages.append(page)

        facts: Optional[CategorizedFacts] = None
        if pages:
            facts = await self._extract_facts(pages, flags, request_id)

        data = CachedUrlData(
            extracted_content=main_text,
            extracted_facts=facts,
            sources=self._collect_sources(target_url, pages),
        )
        if data.extracted_content or (facts is not None and facts.total_count() > 0):
            self.cache.set(target_url, data.model_dump(mode="json", by_alias=True))
        return data

    async def _fetch_page(self, url: str, request_id: str) -> PageFetch:
        try:
            resp = await self.fetcher.fetch(url)
        except Exception as exc:
            logger.warning(
                "Fetch failed for %s: %s",
                url,
                exc,
                extra={"request_id": request_id, "connector": self.fetcher.name},
            )
            return PageFetch(url=url, error=str(exc) or exc.__class__.__name__)
        if not resp.ok:
            return PageFetch(url=url, status=resp.status)
        # CPU bound on multi-MB pages
        text = await asyncio.to_thread(extract_safe_text, resp.text, MAX_PAGE_TEXT_CHARS)
        return PageFetch(url=url, text=text, status=resp.status)

    async def _extract_facts(
        self, pages: Sequence[PageFetch], flags: List[RiskFlag], request_id: str
    ) -> Optional[CategorizedFacts]:
        self._stage(PipelineStage.EXTRACT, request_id, "extracting facts from %d pages", len(pages))
        combined = "\n\n---\n\n".join(page.text for page in pages)
        prompt = safe_prompt_replace(
            FACT_EXTRACTION_PROMPT,
            {"pages": combined[:MAX_FACT_PROMPT_CHARS]},
            max_length=MAX_FACT_PROMPT_CHARS,
        )
        try:
            facts = await self.llm.generate_json(prompt, CategorizedFacts, max_retries=1)
        except Exception as exc:
            logger.warning(
                "Fact extraction failed: %s",
                exc,
                extra={"request_id": request_id, "stage": PipelineStage.EXTRACT.value},
            )
            flags.append(
                RiskFlag(type="unverified", message=FACT_EXTRACTION_FAILED_MESSAGE, severity="medium")
            )
            return None
        logger.info(
            "Extracted %d facts",
            facts.total_count(),
            extra={"request_id": request_id, "stage": PipelineStage.EXTRACT.value},
        )
        return facts

    @staticmethod
    def _collect_sources(target_url: str, pages: Sequence[PageFetch]) -> List[InformationSource]:
        by_key: Dict[str, InformationSource] = {}
        host = urlsplit(target_url).hostname
        for page in pages:
            key = normalize_source_url(page.url)
            if key in by_key or len(by_key) >= MAX_SOURCES:
                continue
            by_key[key] = InformationSource(
                url=page.url,
                title=host if page.url == target_url else None,
                category=detect_source_category(page.url),
            )
        return prioritize_sources(list(by_key.values()))

    # -- prompts --------------------------------------------------------------

    @staticmethod
    def _analysis_prompt(content: str, sender_info: Optional[SenderInfo]) -> str:
        sender = ""
        if sender_info:
            sender = (
                "【送り手情報】\n"
                f"会社名: {sanitize_for_prompt(sender_info.company_name, 200)}\n"
                f"サービス: {sanitize_for_prompt(sender_info.service_description, 1000)}"
            )
        return fill_placeholders(
            ANALYSIS_PROMPT,
            {"content": sanitize_for_prompt(content, MAX_ANALYSIS_CONTENT_CHARS), "sender": sender},
        )

    @staticmethod
    def _check_injection(field: str, text: str, request_id: str) -> None:
        if detect_injection_attempt(text):
            logger.warning(
                "Possible prompt injection in %s",
                field,
                extra={"request_id": request_id},
            )


@lru_cache(maxsize=1)
def get_pipeline() -> AnalysisPipeline:
    return AnalysisPipeline(get_url_cache(), get_web_fetcher(), get_llm())

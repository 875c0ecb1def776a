# backend/letterfacts/schemas/analysis.py
from enum import Enum
from typing import Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    constr,
    field_validator,
)

MAX_PDF_TEXT_LEN = 10000
MAX_USER_NOTES_LEN = 5000
MAX_URL_LEN = 2048


class FactCategory(str, Enum):
    NUMBERS = "numbers"
    PROPER_NOUNS = "properNouns"
    RECENT_MOVES = "recentMoves"
    HIRING_TRENDS = "hiringTrends"
    COMPANY_DIRECTION = "companyDirection"


SourceCategory = Literal["corporate", "news", "recruit", "ir", "product", "other"]

TopicTag = Literal[
    "governance",
    "compliance",
    "supply_chain",
    "finance_ops",
    "digital_transformation",
    "sustainability",
    "global_expansion",
    "hr_organization",
    "risk_management",
    "growth_strategy",
    "other",
]

Severity = Literal["high", "medium", "low"]


# ---------------------------------------------------------------------------
# Extracted facts
# ---------------------------------------------------------------------------

class ExtractedFactItem(BaseModel):
    """A single fact with page-level provenance."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    content: str
    source: str | None = Field(
        default=None, validation_alias=AliasChoices("source", "sourceUrl")
    )
    source_title: str | None = Field(
        default=None, validation_alias=AliasChoices("source_title", "sourceTitle")
    )
    source_category: SourceCategory | None = Field(
        default=None, validation_alias=AliasChoices("source_category", "sourceCategory")
    )


FactItem = Union[str, ExtractedFactItem]


class CategorizedFacts(BaseModel):
    """
    Facts produced by one extraction call, grouped by category.

    Field aliases match the JSON keys the extraction prompt asks for, so model
    output validates directly. Items may be plain strings or sourced objects.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    numbers: list[FactItem] = Field(default_factory=list)
    proper_nouns: list[FactItem] = Field(default_factory=list, alias="properNouns")
    recent_moves: list[FactItem] = Field(default_factory=list, alias="recentMoves")
    hiring_trends: list[FactItem] = Field(default_factory=list, alias="hiringTrends")
    company_direction: list[FactItem] = Field(default_factory=list, alias="companyDirection")

    def items_for(self, category: FactCategory) -> list[FactItem]:
        return {
            FactCategory.NUMBERS: self.numbers,
            FactCategory.PROPER_NOUNS: self.proper_nouns,
            FactCategory.RECENT_MOVES: self.recent_moves,
            FactCategory.HIRING_TRENDS: self.hiring_trends,
            FactCategory.COMPANY_DIRECTION: self.company_direction,
        }[category]

    def total_count(self) -> int:
        return sum(len(self.items_for(c)) for c in FactCategory)


class SelectedFact(BaseModel):
    """
    A scored fact candidate.

    `quote_key` is the short excerpt a generated letter must contain for the
    fact to count as cited. The remaining annotations are informational and
    never influence selection.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    content: str
    category: FactCategory
    relevance_score: int = Field(ge=0, le=100, alias="relevanceScore")
    reason: str
    quote_key: str = Field(min_length=1, alias="quoteKey")

    topic_tags: list[TopicTag] = Field(default_factory=list, alias="topicTags")
    bridge_reason: str | None = Field(default=None, alias="bridgeReason")
    confidence: int = Field(default=50, ge=0, le=100)
    published_at: str | None = Field(default=None, alias="publishedAt")
    is_mid_term_plan: bool = Field(default=False, alias="isMidTermPlan")
    source_url: str | None = Field(default=None, alias="sourceUrl")
    source_title: str | None = Field(default=None, alias="sourceTitle")
    source_category: SourceCategory | None = Field(default=None, alias="sourceCategory")


class FactSelectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    selected: list[SelectedFact] = Field(default_factory=list)
    rejected: list[SelectedFact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Analysis result
# ---------------------------------------------------------------------------

class RiskFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["missing_info", "stale_data", "unverified", "competitor_mention"]
    message: str
    severity: Severity


class Signal(BaseModel):
    type: Literal["growth", "challenge", "transformation", "compliance", "competition"]
    description: str
    confidence: Severity


class NewsItem(BaseModel):
    headline: str
    summary: str
    date: str | None = None
    source_url: str | None = None


class ProofPoint(BaseModel):
    type: Literal["numeric", "case_study", "news", "inference"]
    content: str = Field(min_length=1)
    source: str | None = None
    confidence: Severity


class MissingInfo(BaseModel):
    field: str
    priority: Severity
    suggestion: str


class Hypotheses(BaseModel):
    timing_reason: str
    challenge_hypothesis: str
    value_proposition: str
    cta_suggestion: str


class Facts(BaseModel):
    company_name: str | None = None
    person_name: str | None = None
    person_position: str | None = None
    industry: str | None = None
    company_size: str | None = None
    recent_events: list[str] | None = None


class InformationSource(BaseModel):
    url: str
    title: str | None = None
    category: SourceCategory
    is_primary: bool = False


class AnalysisDraft(BaseModel):
    """Output schema of the analysis model call."""

    facts: Facts = Field(default_factory=Facts)
    signals: list[Signal] = Field(default_factory=list)
    recent_news: list[NewsItem] = Field(default_factory=list)
    proof_points: list[ProofPoint] = Field(default_factory=list)
    hypotheses: Hypotheses
    missing_info: list[MissingInfo] = Field(default_factory=list)
    risk_flags: list[RiskFlag] = Field(default_factory=list)


class AnalysisResult(AnalysisDraft):
    """
    Aggregate returned by one pipeline run. Frozen: derive new results with
    `model_copy(update=...)` instead of patching.
    """

    model_config = ConfigDict(frozen=True)

    extracted_facts: CategorizedFacts | None = None
    selected_facts: list[SelectedFact] = Field(default_factory=list)
    sources: list[InformationSource] | None = None
    target_url: str | None = None


class CachedUrlData(BaseModel):
    """What the orchestrator stores per target URL in the two-tier cache."""

    extracted_content: str = ""
    extracted_facts: CategorizedFacts | None = None
    sources: list[InformationSource] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class SenderInfo(BaseModel):
    company_name: constr(max_length=200)
    service_description: constr(max_length=1000)


class AnalyzeInputRequest(BaseModel):
    target_url: str | None = None
    pdf_text: str | None = Field(default=None, max_length=MAX_PDF_TEXT_LEN)
    user_notes: str | None = Field(default=None, max_length=MAX_USER_NOTES_LEN)
    sender_info: SenderInfo | None = None

    @field_validator("target_url", "pdf_text", "user_notes", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            stripped = v.strip()
            return stripped or None
        return v

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if len(v) > MAX_URL_LEN:
            raise ValueError("target_url is too long")
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("target_url must be an http(s) URL")
        return v


class FactSelectionRequest(BaseModel):
    facts: CategorizedFacts
    target_role: str | None = None
    product_strength: str | None = None
    target_challenges: str | None = None
    proposal_theme: str | None = None


class NewsSearchRequest(BaseModel):
    company_name: constr(min_length=1, max_length=200)


class NewsSearchOut(BaseModel):
    facts: str

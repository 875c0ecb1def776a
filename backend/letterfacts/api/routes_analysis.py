from uuid import uuid4
import logging

from fastapi import APIRouter, Depends, HTTPException, Security
from fastapi.security.api_key import APIKeyHeader

from ..core.config import get_settings
from ..schemas.analysis import (
    AnalysisResult,
    AnalyzeInputRequest,
    FactSelectionRequest,
    FactSelectionResult,
    NewsSearchOut,
    NewsSearchRequest,
)
from ..services.connectors import (
    ConnectorError,
    ConnectorNotConfiguredError,
    SearchConnector,
    get_search_connector,
)
from ..services.fact_selector import select_facts
from ..services.llm import ExtractionError, LLMClient, get_llm
from ..services.news_search import search_news_facts
from ..services.orchestrator import AnalysisPipeline, get_pipeline

router = APIRouter(tags=["analysis"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
logger = logging.getLogger(__name__)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Simple header-based API key authentication.

    - In dev, if API_AUTH_KEY is not set, auth is skipped.
    - Otherwise, require X-API-Key == API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


@router.post("/analyze-input", response_model=AnalysisResult)
async def analyze_input(
    payload: AnalyzeInputRequest,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key),
):
    request_id = str(uuid4())
    logger.info(
        "Analyzing input",
        extra={
            "request_id": request_id,
            "has_target_url": payload.target_url is not None,
            "has_pdf_text": payload.pdf_text is not None,
            "has_user_notes": payload.user_notes is not None,
        },
    )
    return await pipeline.run_analysis(
        target_url=payload.target_url,
        pdf_text=payload.pdf_text,
        user_notes=payload.user_notes,
        sender_info=payload.sender_info,
        request_id=request_id,
    )


@router.post("/select-facts", response_model=FactSelectionResult)
def select_facts_endpoint(
    payload: FactSelectionRequest,
    _: None = Depends(verify_api_key),
):
    return select_facts(
        payload.facts,
        target_role=payload.target_role,
        product_strength=payload.product_strength,
        target_challenges=payload.target_challenges,
        proposal_theme=payload.proposal_theme,
    )


@router.post("/news-search", response_model=NewsSearchOut)
async def news_search(
    payload: NewsSearchRequest,
    search: SearchConnector = Depends(get_search_connector),
    llm: LLMClient = Depends(get_llm),
    _: None = Depends(verify_api_key),
):
    try:
        facts = await search_news_facts(payload.company_name, search=search, llm=llm)
    except ConnectorNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except (ConnectorError, ExtractionError) as exc:
        logger.warning("News search failed: %s", exc, extra={"connector": search.name})
        raise HTTPException(status_code=502, detail="Failed to fetch search results")
    return NewsSearchOut(facts=facts)

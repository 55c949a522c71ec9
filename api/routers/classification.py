# WORKFLOW: Classification endpoint.
# Used by: Cargo import screens, integration testing
# Endpoints:
# 1. /classify - Product description + material + origin -> HS code, confidence, source
#
# Request flow: HTTP POST -> Validation -> Classification Matcher -> MatchResponse
# Classification never writes history; accepting the match happens in the batch workflow.

import logging

from fastapi import APIRouter, Depends

from api.dependencies import get_tariff_engine, to_http_exception
from api.schemas.request import ClassifyRequest
from api.schemas.response import MatchResponse
from core.errors import TariffEngineError
from services.engine import TariffEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["classification"])


@router.post("/classify", response_model=MatchResponse)
def classify(request: ClassifyRequest, engine: TariffEngine = Depends(get_tariff_engine)):
    """Classify a product description to an HS code with a confidence score."""
    logger.info(f"Classify request: '{request.product_description}' ({request.material}) from {request.origin_country_code}")
    try:
        result = engine.classify(
            request.product_description,
            request.material,
            request.origin_country_code,
            as_of=request.as_of,
            declared_hs_code=request.declared_hs_code,
            excluded_codes=request.excluded_codes,
        )
    except TariffEngineError as e:
        raise to_http_exception(e)

    return MatchResponse(
        hs_code=result.hs_code,
        confidence=result.confidence,
        source=result.source,
        needs_review=result.confidence < engine.config.review_threshold,
    )

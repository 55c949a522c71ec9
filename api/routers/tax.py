# WORKFLOW: Tax computation endpoint for a single, already classified line.
# Used by: Quotation tools, integration testing
# Endpoints:
# 1. /tax/compute - Rule + measures + destination VAT -> TaxBreakdown
#
# Request flow: HTTP POST -> Validation -> resolve rule/measures/VAT -> compute_tax -> Response
# Missing reference data is reported with its key; no fallback rate is ever used.

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_tariff_engine, to_http_exception
from api.schemas.request import TaxComputeRequest
from api.schemas.response import TaxResponse
from core.errors import TariffEngineError
from services.engine import TariffEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tax", tags=["tax"])


@router.post("/compute", response_model=TaxResponse)
def compute(request: TaxComputeRequest, engine: TariffEngine = Depends(get_tariff_engine)):
    try:
        result = engine.compute_line_tax(
            request.hs_code,
            request.origin_country_code,
            request.destination_country_code,
            request.as_of,
            request.customs_value,
            request.quantity,
        )
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info(
        f"Tax computed for {request.hs_code}/{request.origin_country_code} -> {request.destination_country_code}: "
        f"{result.tax.total_tax}"
    )
    return TaxResponse(rule=result.rule, measures=result.overlay, tax=result.tax, snapshot_version=result.snapshot_version)

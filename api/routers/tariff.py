# WORKFLOW: Audit endpoints showing "why this rate" without recomputing taxes.
# Used by: Audit/reporting tools, customs brokers reviewing a declaration
# Endpoints:
# 1. /tariff/base-duty - Tariff rule in force for (HS code, origin, date)
# 2. /tariff/measures - Preferential duty, anti-dumping, countervailing, restrictions
# 3. /tariff/declaration-risk - Declared unit price against earlier declarations
#
# Request flow: HTTP POST -> Validation -> Tariff Registry / Measure Overlay -> Response

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_tariff_engine, to_http_exception
from api.schemas.request import DeclarationRiskQuery, TariffQuery
from api.schemas.response import BaseDutyResponse, DeclarationRiskResponse, MeasuresResponse
from core.errors import TariffEngineError
from services.engine import TariffEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tariff", tags=["tariff"])


@router.post("/base-duty", response_model=BaseDutyResponse)
def base_duty(query: TariffQuery, engine: TariffEngine = Depends(get_tariff_engine)):
    try:
        rule = engine.resolve_base_duty(query.hs_code, query.origin_country_code, query.as_of)
    except TariffEngineError as e:
        raise to_http_exception(e)
    return BaseDutyResponse(
        hs_code=query.hs_code,
        origin_country_code=query.origin_country_code,
        as_of=query.as_of,
        rule=rule,
    )


@router.post("/measures", response_model=MeasuresResponse)
def measures(query: TariffQuery, engine: TariffEngine = Depends(get_tariff_engine)):
    try:
        overlay = engine.resolve_measures(query.hs_code, query.origin_country_code, query.as_of)
    except TariffEngineError as e:
        raise to_http_exception(e)
    return MeasuresResponse(
        hs_code=query.hs_code,
        origin_country_code=query.origin_country_code,
        as_of=query.as_of,
        measures=overlay,
    )


@router.post("/declaration-risk", response_model=DeclarationRiskResponse)
def declaration_risk(query: DeclarationRiskQuery, engine: TariffEngine = Depends(get_tariff_engine)):
    try:
        risk = engine.check_declaration_risk(query.hs_code, query.origin_country_code, query.unit_price)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return DeclarationRiskResponse(risk=risk, is_risky=risk.is_risky)

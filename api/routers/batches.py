# WORKFLOW: Batch review and confirmation endpoints.
# Used by: Customs broker UI
# Endpoints:
# 1. POST /batches, GET /batches/{batch_id} - Create and inspect a shipment batch
# 2. POST /batches/{batch_id}/items - Add a line item
# 3. POST /batches/{batch_id}/process - Classify and tax Pending items
# 4. POST /batches/{batch_id}/items/{item_id}/approve | dispute | manual-code - Review actions
# 5. POST /batches/{batch_id}/trade-terms - Incoterm valuation of the whole batch
# 6. POST /batches/{batch_id}/confirm - Lock a fully approved batch
# 7. POST /batches/{batch_id}/declaration-result - Customs outcome of a confirmed batch
#
# Request flow: HTTP POST -> Validation -> BatchReconciliation -> BatchResponse / LineItemResponse

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_batch_service, to_http_exception
from api.schemas.request import (
    AddItemRequest,
    ApproveRequest,
    ConfirmRequest,
    CreateBatchRequest,
    DeclarationResultRequest,
    ManualCodeRequest,
    TradeTermsRequest,
)
from api.schemas.response import BatchResponse, DeclarationResultResponse, LineItemResponse
from core.errors import TariffEngineError
from core.models import DeclarationResult, TradeTerms
from services.batch_reconciliation import BatchReconciliation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])


def _unprocessable(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(request: CreateBatchRequest, service: BatchReconciliation = Depends(get_batch_service)):
    batch = service.create_batch(
        request.destination_country_code,
        request.import_date,
        clearance_type=request.clearance_type,
        batch_id=request.batch_id,
    )
    return BatchResponse.from_batch(batch)


@router.get("", response_model=List[BatchResponse])
def list_batches(service: BatchReconciliation = Depends(get_batch_service)):
    return [BatchResponse.from_batch(batch) for batch in service.repository.list()]


@router.get("/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, service: BatchReconciliation = Depends(get_batch_service)):
    try:
        return BatchResponse.from_batch(service.get_batch(batch_id))
    except TariffEngineError as e:
        raise to_http_exception(e)


@router.post("/{batch_id}/items", response_model=LineItemResponse, status_code=status.HTTP_201_CREATED)
def add_item(batch_id: str, request: AddItemRequest, service: BatchReconciliation = Depends(get_batch_service)):
    try:
        item = service.add_item(batch_id, **request.model_dump())
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _unprocessable(e)
    return LineItemResponse.from_item(item)


@router.post("/{batch_id}/process", response_model=BatchResponse)
def process_batch(batch_id: str, service: BatchReconciliation = Depends(get_batch_service)):
    try:
        batch = service.process_batch(batch_id)
    except TariffEngineError as e:
        raise to_http_exception(e)
    return BatchResponse.from_batch(batch)


@router.post("/{batch_id}/items/{item_id}/approve", response_model=LineItemResponse)
def approve_item(
    batch_id: str,
    item_id: str,
    request: Optional[ApproveRequest] = None,
    service: BatchReconciliation = Depends(get_batch_service),
):
    hs_code = request.hs_code if request else None
    try:
        item = service.approve_item(batch_id, item_id, hs_code=hs_code)
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _unprocessable(e)
    return LineItemResponse.from_item(item)


@router.post("/{batch_id}/items/{item_id}/dispute", response_model=LineItemResponse)
def dispute_item(batch_id: str, item_id: str, service: BatchReconciliation = Depends(get_batch_service)):
    try:
        item = service.dispute_item(batch_id, item_id)
    except TariffEngineError as e:
        raise to_http_exception(e)
    return LineItemResponse.from_item(item)


@router.post("/{batch_id}/items/{item_id}/manual-code", response_model=LineItemResponse)
def assign_manual_code(
    batch_id: str,
    item_id: str,
    request: ManualCodeRequest,
    service: BatchReconciliation = Depends(get_batch_service),
):
    try:
        item = service.assign_manual_code(batch_id, item_id, request.hs_code)
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _unprocessable(e)
    return LineItemResponse.from_item(item)


@router.post("/{batch_id}/trade-terms", response_model=BatchResponse)
def apply_trade_terms(
    batch_id: str,
    request: TradeTermsRequest,
    service: BatchReconciliation = Depends(get_batch_service),
):
    try:
        batch = service.apply_trade_terms(batch_id, TradeTerms(**request.model_dump()))
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _unprocessable(e)
    return BatchResponse.from_batch(batch)


@router.post("/{batch_id}/confirm", response_model=BatchResponse)
def confirm_batch(
    batch_id: str,
    request: Optional[ConfirmRequest] = None,
    service: BatchReconciliation = Depends(get_batch_service),
):
    confirmed_by = request.confirmed_by if request else None
    try:
        batch = service.confirm_batch(batch_id, confirmed_by=confirmed_by)
    except TariffEngineError as e:
        raise to_http_exception(e)
    return BatchResponse.from_batch(batch)


@router.post("/{batch_id}/declaration-result", response_model=DeclarationResultResponse)
def record_declaration_result(
    batch_id: str,
    request: DeclarationResultRequest,
    service: BatchReconciliation = Depends(get_batch_service),
):
    try:
        updated = service.record_declaration_result(batch_id, DeclarationResult(request.result))
    except TariffEngineError as e:
        raise to_http_exception(e)
    return DeclarationResultResponse(batch_id=batch_id, result=request.result, updated=updated)

# WORKFLOW: Pydantic response schemas for the engine's HTTP surface.
# Used by: api/routers/* (response_model) and tests
# Schemas include:
# 1. MatchResponse - Classification result
# 2. BaseDutyResponse / MeasuresResponse - Audit views of the resolved rates
# 3. TaxResponse - Tax breakdown with the rule and overlay it was computed from
# 4. LineItemResponse / BatchResponse - Batch workflow state and totals
# 5. SyncResponse - Reference-data sync report
# 6. DeclarationRiskResponse / DeclarationResultResponse - Declared unit price risk and outcomes
#
# Money is serialised as strings by pydantic's Decimal handling, never as floats.

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from core.models import (
    Batch,
    DeclarationRisk,
    LineItem,
    MatchSource,
    MeasureOverlayResult,
    Restriction,
    TariffRule,
    TaxBreakdown,
)


class MatchResponse(BaseModel):
    hs_code: str
    confidence: float
    source: MatchSource
    needs_review: bool


class BaseDutyResponse(BaseModel):
    hs_code: str
    origin_country_code: str
    as_of: date
    rule: TariffRule


class MeasuresResponse(BaseModel):
    hs_code: str
    origin_country_code: str
    as_of: date
    measures: MeasureOverlayResult


class TaxResponse(BaseModel):
    rule: TariffRule
    measures: MeasureOverlayResult
    tax: TaxBreakdown
    snapshot_version: str


class LineItemResponse(BaseModel):
    item_id: str
    product_description: str
    material: Optional[str] = None
    origin_country_code: str
    declared_hs_code: Optional[str] = None
    customs_value: Decimal
    invoice_value: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    weight: Optional[Decimal] = None
    status: str
    matched_hs_code: Optional[str] = None
    match_confidence: Optional[float] = None
    match_source: Optional[MatchSource] = None
    flagged: bool = False
    restrictions: List[Restriction] = []
    declaration_risk: Optional[DeclarationRisk] = None
    excluded_codes: List[str] = []
    duty_amount: Optional[Decimal] = None
    anti_dumping_amount: Optional[Decimal] = None
    countervailing_amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_item(cls, item: LineItem) -> "LineItemResponse":
        return cls(
            item_id=item.item_id,
            product_description=item.product_description,
            material=item.material,
            origin_country_code=item.origin_country_code,
            declared_hs_code=item.declared_hs_code,
            customs_value=item.customs_value,
            invoice_value=item.invoice_value,
            quantity=item.quantity,
            weight=item.weight,
            status=item.status.value,
            matched_hs_code=item.matched_hs_code,
            match_confidence=item.match_confidence,
            match_source=item.match_source,
            flagged=item.flagged,
            restrictions=item.restrictions,
            declaration_risk=item.declaration_risk,
            excluded_codes=sorted(item.excluded_codes),
            duty_amount=item.duty_amount,
            anti_dumping_amount=item.anti_dumping_amount,
            countervailing_amount=item.countervailing_amount,
            vat_amount=item.vat_amount,
            total_tax=item.total_tax,
            error=item.error,
        )


class BatchResponse(BaseModel):
    batch_id: str
    destination_country_code: str
    import_date: date
    clearance_type: str
    incoterm: Optional[str] = None
    items: List[LineItemResponse]
    total_value: Decimal
    total_customs_value: Decimal
    total_duty: Decimal
    total_vat: Decimal
    total_other_tax: Decimal
    total_tax: Decimal
    payable_vat: Decimal
    deferred_vat: Decimal
    by_hs_code: Dict[str, Dict[str, Any]]
    confirmed: bool
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchResponse":
        with batch.lock:
            return cls(
                batch_id=batch.batch_id,
                destination_country_code=batch.destination_country_code,
                import_date=batch.import_date,
                clearance_type=batch.clearance_type.value,
                incoterm=batch.trade_terms.incoterm if batch.trade_terms else None,
                items=[LineItemResponse.from_item(item) for item in batch.items.values()],
                total_value=batch.total_value,
                total_customs_value=batch.total_customs_value,
                total_duty=batch.total_duty,
                total_vat=batch.total_vat,
                total_other_tax=batch.total_other_tax,
                total_tax=batch.total_tax,
                payable_vat=batch.payable_vat,
                deferred_vat=batch.deferred_vat,
                by_hs_code=batch.by_hs_code,
                confirmed=batch.confirmed,
                confirmed_at=batch.confirmed_at,
                confirmed_by=batch.confirmed_by,
            )


class SyncResponse(BaseModel):
    sync_type: str
    version: str
    records: int
    duration_ms: float
    warnings: List[str] = []


class DeclarationRiskResponse(BaseModel):
    risk: DeclarationRisk
    is_risky: bool


class DeclarationResultResponse(BaseModel):
    batch_id: str
    result: str
    updated: int

# WORKFLOW: Pydantic request schemas for API input validation.
# Used by: api/routers/* for request validation and documentation
# Schemas include:
# 1. ClassifyRequest - For /classify
# 2. TariffQuery - For /tariff/base-duty and /tariff/measures
# 3. TaxComputeRequest - For /tax/compute
# 4. CreateBatchRequest / AddItemRequest - For batch creation
# 5. ApproveRequest / ManualCodeRequest / ConfirmRequest - For review actions
# 6. TradeTermsRequest - For /batches/{id}/trade-terms
# 7. DeclarationRiskQuery / DeclarationResultRequest - For declared unit price checks and outcomes
#
# Validation flow: HTTP request -> Pydantic validation -> Endpoint processing

from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from core.models import ClearanceType

_HS_PATTERN = r"^[0-9][0-9. ]{1,12}[0-9]$"


class ClassifyRequest(BaseModel):
    product_description: str = Field(..., min_length=1, max_length=1000, description="Free-text product description")
    material: Optional[str] = Field(None, max_length=200, description="Main material")
    origin_country_code: str = Field(..., min_length=2, max_length=3, description="Origin country code")
    as_of: Optional[date] = Field(None, description="Import date, defaults to today")
    declared_hs_code: Optional[str] = Field(None, pattern=_HS_PATTERN, description="Supplier-declared HS code")
    excluded_codes: List[str] = Field(default_factory=list, description="Codes to skip")


class TariffQuery(BaseModel):
    hs_code: str = Field(..., pattern=_HS_PATTERN, description="HS code (6-10 digits)")
    origin_country_code: str = Field(..., min_length=2, max_length=3)
    as_of: date


class TaxComputeRequest(TariffQuery):
    destination_country_code: str = Field(..., min_length=2, max_length=3)
    customs_value: Decimal = Field(..., ge=0)
    quantity: Optional[Decimal] = Field(None, ge=0)


class CreateBatchRequest(BaseModel):
    destination_country_code: str = Field(..., min_length=2, max_length=3)
    import_date: date
    clearance_type: ClearanceType = ClearanceType.STANDARD
    batch_id: Optional[str] = Field(None, max_length=64)


class AddItemRequest(BaseModel):
    product_description: str = Field(..., min_length=1, max_length=1000)
    material: Optional[str] = Field(None, max_length=200)
    origin_country_code: str = Field(..., min_length=2, max_length=3)
    customs_value: Decimal = Field(..., ge=0)
    declared_hs_code: Optional[str] = Field(None, pattern=_HS_PATTERN)
    quantity: Optional[Decimal] = Field(None, ge=0)
    weight: Optional[Decimal] = Field(None, ge=0)
    item_id: Optional[str] = Field(None, max_length=64)


class ApproveRequest(BaseModel):
    hs_code: Optional[str] = Field(None, pattern=_HS_PATTERN, description="Override the matched code")


class ManualCodeRequest(BaseModel):
    hs_code: str = Field(..., pattern=_HS_PATTERN)


class ConfirmRequest(BaseModel):
    confirmed_by: Optional[str] = Field(None, max_length=100)


class TradeTermsRequest(BaseModel):
    incoterm: str = Field("FOB", min_length=3, max_length=3)
    international_freight: Decimal = Field(Decimal("0"), ge=0)
    insurance_cost: Optional[Decimal] = Field(None, ge=0)
    domestic_freight_export: Decimal = Field(Decimal("0"), ge=0)
    domestic_freight_import: Decimal = Field(Decimal("0"), ge=0)
    unloading_cost: Decimal = Field(Decimal("0"), ge=0)
    allocation_method: Literal["value", "weight"] = "value"


class DeclarationRiskQuery(BaseModel):
    hs_code: str = Field(..., pattern=_HS_PATTERN)
    origin_country_code: str = Field(..., min_length=2, max_length=3)
    unit_price: Decimal = Field(..., ge=0, description="Declared customs value per unit")


class DeclarationResultRequest(BaseModel):
    result: Literal["passed", "questioned", "rejected"]

# WORKFLOW: Domain records shared by the registry, overlay, matcher, tax engine and batch workflow.
# Used by: services/*, etl/loader.py, api/schemas/*
# Records include:
# 1. TariffRule - effective-dated base duty per (HS code, origin)
# 2. TradeMeasure - anti-dumping/countervailing/quota/licence/SPS measures with typed conditions
# 3. TradeAgreement - preferential rate per country scope
# 4. NomenclatureEntry - HS code descriptions feeding the description index
# 5. MatchRecord / MatchResult - learned matches and classifier output
# 6. MeasureOverlayResult / TaxBreakdown - resolution and computation outputs
# 7. DeclarationRecord / DeclarationStats / DeclarationRisk - declared unit prices and their customs outcome
# 8. LineItem / Batch - mutable workflow state for batch reconciliation
#
# Reference records are frozen pydantic models; they are only ever replaced by a sync.

import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from etl.duty_parser import parse_duty_rate

ERGA_OMNES = "ERGA OMNES"
_AREA_ALIASES = {"ALL": ERGA_OMNES, "ERGA_OMNES": ERGA_OMNES, "1011": ERGA_OMNES}


def normalize_hs_code(hs_code: str) -> str:
    """Reduce an HS code to its digits ("6109.10.00" -> "61091000")."""
    digits = re.sub(r"\D", "", str(hs_code or ""))
    if len(digits) < 2 or len(digits) > 10:
        raise ValueError(f"Invalid HS code: {hs_code!r}")
    return digits


def canonical_hs_code(hs_code: str) -> str:
    """Strip insignificant trailing "00" pairs beyond six digits.

    6109100000, 61091000 and 610910 all share the canonical form 610910.
    """
    code = normalize_hs_code(hs_code)
    while len(code) > 6 and code.endswith("00"):
        code = code[:-2]
    return code


def normalize_area(area: str) -> str:
    value = str(area).strip().upper()
    return _AREA_ALIASES.get(value, value)


def _normalize_areas(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [part for part in re.split(r"[,;]", value) if part.strip()]
    return frozenset(normalize_area(area) for area in value)


def window_covers(valid_from: date, valid_to: Optional[date], as_of: date) -> bool:
    return valid_from <= as_of and (valid_to is None or valid_to >= as_of)


class DutyKind(str, Enum):
    AD_VALOREM = "AdValorem"
    FIXED_PER_UNIT = "FixedPerUnit"


class MeasureType(str, Enum):
    ANTI_DUMPING = "AntiDumping"
    COUNTERVAILING = "Countervailing"
    QUOTA = "Quota"
    LICENSE_REQUIRED = "LicenseRequired"
    SPS_REQUIRED = "SpsRequired"


MONETARY_MEASURE_TYPES = (MeasureType.ANTI_DUMPING, MeasureType.COUNTERVAILING)


class MatchSource(str, Enum):
    EXACT = "Exact"
    PREFIX = "Prefix"
    FUZZY = "Fuzzy"
    HISTORY = "History"
    MANUAL = "Manual"


class LineItemStatus(str, Enum):
    PENDING = "Pending"
    MATCHED = "Matched"
    REVIEWING = "Reviewing"
    APPROVED = "Approved"
    DISPUTED = "Disputed"


class ClearanceType(str, Enum):
    STANDARD = "40"
    VAT_DEFERRED = "42"


class DeclarationResult(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    QUESTIONED = "questioned"
    REJECTED = "rejected"


class RiskLevel(str, Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TariffRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    hs_code: str
    origin_country_code: str
    duty_rate: Decimal = Field(..., ge=0, description="Percent for ad valorem, amount per unit otherwise")
    duty_kind: DutyKind = DutyKind.AD_VALOREM
    unit: Optional[str] = Field(None, description="Unit of measure of a per-unit duty; line quantities are given in it")
    unit_quantity: int = Field(1, ge=1, description="Quantity of unit the amount applies to, 100 for EUR/100kg")
    valid_from: date
    valid_to: Optional[date] = None
    legal_base: str = ""
    data_source: str = ""
    is_active: bool = True
    description: Optional[str] = None

    @field_validator("hs_code")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        return normalize_hs_code(v)

    @field_validator("origin_country_code")
    @classmethod
    def _area(cls, v: str) -> str:
        return normalize_area(v)

    @property
    def canonical_code(self) -> str:
        return canonical_hs_code(self.hs_code)

    @property
    def fixed_amount(self) -> Decimal:
        return self.duty_rate

    def is_in_force(self, as_of: date) -> bool:
        return self.is_active and window_covers(self.valid_from, self.valid_to, as_of)


# Measure conditions: one closed variant per measure type.

class AntiDumpingConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["AntiDumping"] = "AntiDumping"
    additional_code: Optional[str] = Field(None, description="TARIC additional code of the exporter")
    minimum_import_price: Optional[Decimal] = None


class CountervailingConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["Countervailing"] = "Countervailing"
    additional_code: Optional[str] = None
    subsidy_scheme: Optional[str] = None


class QuotaConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["Quota"] = "Quota"
    order_number: Optional[str] = None
    volume: Optional[Decimal] = None
    unit: Optional[str] = None


class LicenseConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["LicenseRequired"] = "LicenseRequired"
    document_code: Optional[str] = None
    issuing_authority: Optional[str] = None


class SpsConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["SpsRequired"] = "SpsRequired"
    certificate_code: Optional[str] = None
    inspection_point: Optional[str] = None


MeasureConditions = Annotated[
    Union[AntiDumpingConditions, CountervailingConditions, QuotaConditions, LicenseConditions, SpsConditions],
    Field(discriminator="kind"),
]


class TradeMeasure(BaseModel):
    model_config = ConfigDict(frozen=True)

    measure_id: str
    measure_type: MeasureType
    hs_code_prefix: str
    geographical_area: FrozenSet[str]
    duty_expression: Optional[Decimal] = Field(None, description="Ad valorem percent for monetary measures")
    valid_from: date
    valid_to: Optional[date] = None
    excluded_areas: FrozenSet[str] = frozenset()
    conditions: MeasureConditions

    @field_validator("hs_code_prefix")
    @classmethod
    def _prefix_digits(cls, v: str) -> str:
        return normalize_hs_code(v)

    @field_validator("geographical_area", "excluded_areas", mode="before")
    @classmethod
    def _areas(cls, v: Any) -> FrozenSet[str]:
        return _normalize_areas(v)

    @field_validator("duty_expression", mode="before")
    @classmethod
    def _parse_expression(cls, v: Any) -> Optional[Decimal]:
        if v is None or isinstance(v, Decimal):
            return v
        if isinstance(v, (int, float)):
            return Decimal(str(v))
        return parse_duty_rate(str(v))

    @model_validator(mode="before")
    @classmethod
    def _tag_conditions(cls, data: Any) -> Any:
        # Stored conditions are untagged JSON; the measure type selects the variant.
        if not isinstance(data, dict) or "measure_type" not in data:
            return data
        kind = MeasureType(data["measure_type"]).value
        conditions = data.get("conditions")
        if conditions is None:
            return {**data, "conditions": {"kind": kind}}
        if isinstance(conditions, dict) and "kind" not in conditions:
            return {**data, "conditions": {**conditions, "kind": kind}}
        return data

    @model_validator(mode="after")
    def _check_variant(self) -> "TradeMeasure":
        if self.conditions.kind != self.measure_type.value:
            raise ValueError(
                f"Measure {self.measure_id}: {self.conditions.kind} conditions on a {self.measure_type.value} measure"
            )
        if self.measure_type in MONETARY_MEASURE_TYPES and self.duty_expression is None:
            raise ValueError(f"Measure {self.measure_id}: monetary measure without duty expression")
        return self

    @property
    def canonical_prefix(self) -> str:
        return canonical_hs_code(self.hs_code_prefix)

    def is_in_force(self, as_of: date) -> bool:
        return window_covers(self.valid_from, self.valid_to, as_of)


class TradeAgreement(BaseModel):
    model_config = ConfigDict(frozen=True)

    agreement_code: str
    country_scope: FrozenSet[str]
    preferential_rate: Decimal = Field(..., ge=0)
    valid_from: date
    valid_to: Optional[date] = None
    is_active: bool = True
    hs_code_prefix: Optional[str] = None
    proof_document: Optional[str] = Field(None, description="Proof of origin, e.g. EUR.1 or REX statement")

    @field_validator("country_scope", mode="before")
    @classmethod
    def _scope(cls, v: Any) -> FrozenSet[str]:
        return _normalize_areas(v)

    @field_validator("hs_code_prefix")
    @classmethod
    def _prefix(cls, v: Optional[str]) -> Optional[str]:
        return normalize_hs_code(v) if v else None

    def is_in_force(self, as_of: date) -> bool:
        return self.is_active and window_covers(self.valid_from, self.valid_to, as_of)


class NomenclatureEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    hs_code: str
    description: str
    is_leaf: bool = True

    @field_validator("hs_code")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        return normalize_hs_code(v)


class MatchRecord(BaseModel):
    product_key: str
    matched_hs_code: str
    match_count: int = Field(..., ge=1)
    last_matched_at: datetime


class MatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    hs_code: str
    confidence: float = Field(..., ge=0, le=100)
    source: MatchSource


class Restriction(BaseModel):
    """Non-monetary measure surfaced for downstream workflow."""

    model_config = ConfigDict(frozen=True)

    measure_id: str
    measure_type: MeasureType
    hs_code_prefix: str
    conditions: MeasureConditions


class MeasureOverlayResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    anti_dumping: Decimal = Decimal("0")
    countervailing: Decimal = Decimal("0")
    preferential_duty: Optional[Decimal] = None
    agreement_code: Optional[str] = None
    proof_document: Optional[str] = None
    anti_dumping_measure_id: Optional[str] = None
    countervailing_measure_id: Optional[str] = None
    restrictions: FrozenSet[Restriction] = frozenset()


class TaxBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    customs_value: Decimal
    effective_duty_rate: Decimal
    preferential_applied: bool = False
    duty_amount: Decimal
    anti_dumping_amount: Decimal
    countervailing_amount: Decimal
    vat_base: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_tax: Decimal


class TradeTerms(BaseModel):
    """Shipment-level Incoterm and costs used to derive customs values."""

    incoterm: str = "FOB"
    international_freight: Decimal = Decimal("0")
    insurance_cost: Optional[Decimal] = None
    domestic_freight_export: Decimal = Decimal("0")
    domestic_freight_import: Decimal = Decimal("0")
    unloading_cost: Decimal = Decimal("0")
    allocation_method: Literal["value", "weight"] = "value"

    @field_validator("incoterm")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class DeclarationRecord(BaseModel):
    """One declared unit price and what customs made of it."""

    model_config = ConfigDict(frozen=True)

    hs_code: str
    origin_country_code: str
    unit_price: Decimal = Field(..., ge=0)
    result: DeclarationResult = DeclarationResult.PENDING
    declared_on: date
    batch_id: Optional[str] = None
    item_id: Optional[str] = None

    @field_validator("hs_code")
    @classmethod
    def _canonical(cls, v: str) -> str:
        return canonical_hs_code(v)

    @field_validator("origin_country_code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class DeclarationStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    hs_code: str
    origin_country_code: str
    total_count: int
    pass_count: int
    questioned_count: int
    rejected_count: int
    pass_rate: int = Field(..., description="Percent of decided declarations that passed")
    min_pass_price: Decimal
    max_pass_price: Decimal
    avg_pass_price: Decimal
    p10_pass_price: Decimal
    p25_pass_price: Decimal
    min_problem_price: Optional[Decimal] = None
    suggested_min_price: Decimal
    risk_level: RiskLevel


class DeclarationRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    hs_code: str
    origin_country_code: str
    unit_price: Decimal
    risk_level: RiskLevel
    stats: Optional[DeclarationStats] = None
    suggested_min_price: Optional[Decimal] = None
    warnings: List[str] = []
    suggestions: List[str] = []

    @property
    def is_risky(self) -> bool:
        return self.risk_level in (RiskLevel.MEDIUM, RiskLevel.HIGH)


@dataclass
class LineItem:
    item_id: str
    product_description: str
    origin_country_code: str
    customs_value: Decimal
    material: Optional[str] = None
    declared_hs_code: Optional[str] = None
    quantity: Optional[Decimal] = None  # in the unit of a per-unit duty (kg for EUR/100kg)
    weight: Optional[Decimal] = None
    invoice_value: Optional[Decimal] = None

    matched_hs_code: Optional[str] = None
    match_confidence: Optional[float] = None
    match_source: Optional[MatchSource] = None
    flagged: bool = False
    restrictions: List[Restriction] = field(default_factory=list)
    excluded_codes: set = field(default_factory=set)
    declaration_risk: Optional[DeclarationRisk] = None

    duty_amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    anti_dumping_amount: Optional[Decimal] = None
    countervailing_amount: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    tax: Optional[TaxBreakdown] = None
    error: Optional[Dict[str, Any]] = None

    status: LineItemStatus = LineItemStatus.PENDING

    def clear_match(self) -> None:
        self.matched_hs_code = None
        self.match_confidence = None
        self.match_source = None
        self.flagged = False
        self.restrictions = []
        self.declaration_risk = None
        self.clear_tax()

    def clear_tax(self) -> None:
        self.duty_amount = None
        self.vat_amount = None
        self.anti_dumping_amount = None
        self.countervailing_amount = None
        self.total_tax = None
        self.tax = None

    def apply_tax(self, breakdown: TaxBreakdown) -> None:
        self.tax = breakdown
        self.duty_amount = breakdown.duty_amount
        self.vat_amount = breakdown.vat_amount
        self.anti_dumping_amount = breakdown.anti_dumping_amount
        self.countervailing_amount = breakdown.countervailing_amount
        self.total_tax = breakdown.total_tax
        self.error = None


@dataclass
class Batch:
    batch_id: str
    destination_country_code: str
    import_date: date
    clearance_type: ClearanceType = ClearanceType.STANDARD
    items: Dict[str, LineItem] = field(default_factory=dict)
    trade_terms: Optional[TradeTerms] = None

    total_value: Decimal = Decimal("0.00")
    total_customs_value: Decimal = Decimal("0.00")
    total_duty: Decimal = Decimal("0.00")
    total_vat: Decimal = Decimal("0.00")
    total_other_tax: Decimal = Decimal("0.00")
    total_tax: Decimal = Decimal("0.00")
    payable_vat: Decimal = Decimal("0.00")
    deferred_vat: Decimal = Decimal("0.00")
    by_hs_code: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

# WORKFLOW: Error taxonomy for tariff resolution, classification and batch workflow.
# Used by: Services (raise), batch reconciliation (routes items), API routers (map to HTTP)
# Errors include:
# 1. TariffNotFound / AmbiguousMeasure / MissingVatRate - fatal for the line item's tax computation
# 2. Unclassified / LowConfidence - recoverable, degrade the line item's workflow state
# 3. ConfirmationError / ConfirmationCancelled / BatchLocked / BatchNotConfirmed - batch confirmation guard
# 4. InvalidTransition - illegal line item status change
# 5. SyncInProgress / ReferenceDataIntegrityError - reference-data sync and snapshot build
#
# Every error carries a machine-readable code and the reference-data key it concerns,
# so operators can correct the data at the source.

from datetime import date
from typing import Any, Dict, Iterable, List, Optional


class TariffEngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class TariffNotFound(TariffEngineError):
    """No tariff rule qualifies for (hs_code, origin, as_of_date)."""

    code = "not_found"

    def __init__(self, hs_code: str, origin_country_code: str, as_of: date):
        super().__init__(
            f"No tariff rule for HS {hs_code} from {origin_country_code} on {as_of.isoformat()}",
            {"hs_code": hs_code, "origin_country_code": origin_country_code, "as_of": as_of.isoformat()},
        )


class AmbiguousMeasure(TariffEngineError):
    """Two equally specific measures of the same type are both in force."""

    code = "ambiguous_measure"

    def __init__(self, measure_type: str, hs_code: str, origin_country_code: str,
                 as_of: date, measure_ids: Iterable[str]):
        ids = sorted(measure_ids)
        super().__init__(
            f"Ambiguous {measure_type} measures {ids} for HS {hs_code} from {origin_country_code}",
            {
                "measure_type": measure_type,
                "hs_code": hs_code,
                "origin_country_code": origin_country_code,
                "as_of": as_of.isoformat(),
                "measure_ids": ids,
            },
        )


class MissingVatRate(TariffEngineError):
    code = "missing_vat_rate"

    def __init__(self, destination_country_code: Optional[str], as_of: Optional[date]):
        super().__init__(
            f"No VAT rate for destination {destination_country_code} on {as_of.isoformat() if as_of else 'unknown date'}",
            {
                "destination_country_code": destination_country_code,
                "as_of": as_of.isoformat() if as_of else None,
            },
        )


class Unclassified(TariffEngineError):
    """No matcher tier produced a candidate; the item needs manual HS code entry."""

    code = "unclassified"

    def __init__(self, product_description: str, material: Optional[str], origin_country_code: str):
        super().__init__(
            f"Could not classify '{product_description}'",
            {
                "product_description": product_description,
                "material": material,
                "origin_country_code": origin_country_code,
            },
        )


class LowConfidence(TariffEngineError):
    code = "low_confidence"

    def __init__(self, hs_code: str, confidence: float, threshold: float):
        super().__init__(
            f"Match {hs_code} at confidence {confidence} is below review threshold {threshold}",
            {"hs_code": hs_code, "confidence": confidence, "threshold": threshold},
        )


class ConfirmationError(TariffEngineError):
    """Batch confirmation attempted while some line items are not Approved."""

    code = "confirmation_error"

    def __init__(self, batch_id: str, pending_items: Dict[str, str]):
        super().__init__(
            f"Batch {batch_id} has {len(pending_items)} line item(s) not approved",
            {"batch_id": batch_id, "items": pending_items},
        )


class ConfirmationCancelled(TariffEngineError):
    code = "confirmation_cancelled"

    def __init__(self, batch_id: str):
        super().__init__(f"Confirmation of batch {batch_id} was cancelled", {"batch_id": batch_id})


class BatchLocked(TariffEngineError):
    code = "batch_locked"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} is confirmed and can no longer change", {"batch_id": batch_id})


class BatchNotConfirmed(TariffEngineError):
    """A declaration outcome was reported for a batch that was never confirmed."""

    code = "batch_not_confirmed"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} has not been confirmed", {"batch_id": batch_id})


class BatchNotFound(TariffEngineError):
    code = "batch_not_found"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} not found", {"batch_id": batch_id})


class LineItemNotFound(TariffEngineError):
    code = "line_item_not_found"

    def __init__(self, batch_id: str, item_id: str):
        super().__init__(
            f"Line item {item_id} not found in batch {batch_id}",
            {"batch_id": batch_id, "item_id": item_id},
        )


class InvalidTransition(TariffEngineError):
    code = "invalid_transition"

    def __init__(self, item_id: str, current: str, target: str):
        super().__init__(
            f"Line item {item_id} cannot move from {current} to {target}",
            {"item_id": item_id, "from": current, "to": target},
        )


class SyncInProgress(TariffEngineError):
    code = "sync_in_progress"

    def __init__(self, sync_type: str):
        super().__init__(f"A {sync_type} sync is already running", {"sync_type": sync_type})


class ReferenceDataIntegrityError(TariffEngineError):
    code = "reference_data_integrity"

    def __init__(self, problems: List[str]):
        super().__init__(
            f"Reference data failed integrity checks: {problems[0]}"
            + (f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""),
            {"problems": problems},
        )


class ValuationError(TariffEngineError):
    code = "valuation_error"

# WORKFLOW: Batch review/confirmation workflow over classified and taxed line items.
# Used by: api/routers/batches.py
# Functions:
# 1. create_batch() / add_item() - Build a shipment batch
# 2. process_batch() - Classify and tax Pending items in a worker pool
# 3. approve_item() / dispute_item() / assign_manual_code() - Review actions
# 4. apply_trade_terms() - Derive customs values from the Incoterm and shipment costs
# 5. reconcile() - Fold line items into batch totals
# 6. confirm_batch() - One-way lock of a fully approved batch, records declared unit prices
# 7. record_declaration_result() - Customs outcome of a confirmed batch's declarations
#
# Line item states:
#   Pending -> Matched -> Reviewing -> Approved
#                     \-> Approved   \-> Disputed -> Pending (prior code excluded)
#                     \-> Disputed
# Approved is terminal. Restricted items and items declared below the usual unit price
# of their code and origin are flagged and held in Reviewing. A confirmed batch rejects every further change.

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.errors import (
    AmbiguousMeasure,
    BatchLocked,
    BatchNotConfirmed,
    BatchNotFound,
    ConfirmationCancelled,
    ConfirmationError,
    InvalidTransition,
    LineItemNotFound,
    LowConfidence,
    MissingVatRate,
    TariffEngineError,
    TariffNotFound,
    Unclassified,
    ValuationError,
)
from core.models import (
    Batch,
    ClearanceType,
    DeclarationRecord,
    DeclarationResult,
    DeclarationRisk,
    DutyKind,
    LineItem,
    LineItemStatus,
    MatchResult,
    MatchSource,
    Restriction,
    TaxBreakdown,
    TradeTerms,
    normalize_hs_code,
)
from services.declaration_risk import line_unit_price
from services.engine import TariffEngine
from services.reference_data import ReferenceSnapshot
from services.tax_engine import compute_tax
from services.text_normalizer import product_key
from services.valuation import allocate_amount, allocation_base, calculate_customs_value

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

ALLOWED_TRANSITIONS = {
    LineItemStatus.PENDING: {LineItemStatus.MATCHED},
    LineItemStatus.MATCHED: {LineItemStatus.REVIEWING, LineItemStatus.APPROVED, LineItemStatus.DISPUTED},
    LineItemStatus.REVIEWING: {LineItemStatus.APPROVED, LineItemStatus.DISPUTED},
    LineItemStatus.DISPUTED: {LineItemStatus.PENDING},
    LineItemStatus.APPROVED: set(),
}

# Errors that block an item from reaching Approved.
_TAX_ERRORS = (TariffNotFound, AmbiguousMeasure, MissingVatRate, ValueError)


def transition(item: LineItem, target: LineItemStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[item.status]:
        raise InvalidTransition(item.item_id, item.status.value, target.value)
    logger.debug(f"Line item {item.item_id}: {item.status.value} -> {target.value}")
    item.status = target


def _error_dict(error: Exception) -> Dict[str, Any]:
    if isinstance(error, TariffEngineError):
        return error.to_dict()
    return {"code": "invalid_input", "message": str(error), "context": {}}


@dataclass
class _Evaluation:
    """Result of the side-effect-free part of processing one item."""

    item_id: str
    match: Optional[MatchResult] = None
    unclassified: Optional[Unclassified] = None
    low_confidence: Optional[LowConfidence] = None
    restrictions: List[Restriction] = field(default_factory=list)
    declaration_risk: Optional[DeclarationRisk] = None
    tax: Optional[TaxBreakdown] = None
    error: Optional[Exception] = None


class BatchRepository:
    """In-process batch store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._batches: Dict[str, Batch] = {}

    def add(self, batch: Batch) -> Batch:
        with self._lock:
            self._batches[batch.batch_id] = batch
        return batch

    def get(self, batch_id: str) -> Batch:
        with self._lock:
            batch = self._batches.get(batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    def list(self) -> List[Batch]:
        with self._lock:
            return list(self._batches.values())


class BatchReconciliation:
    def __init__(self, engine: TariffEngine, repository: Optional[BatchRepository] = None):
        self.engine = engine
        self.config = engine.config
        self.repository = repository or BatchRepository()

    # Batch and item management

    def create_batch(
        self,
        destination_country_code: str,
        import_date: date,
        clearance_type: ClearanceType = ClearanceType.STANDARD,
        batch_id: Optional[str] = None,
    ) -> Batch:
        batch = Batch(
            batch_id=batch_id or uuid.uuid4().hex[:12],
            destination_country_code=destination_country_code.upper(),
            import_date=import_date,
            clearance_type=ClearanceType(clearance_type),
        )
        logger.info(f"Batch {batch.batch_id} created for {batch.destination_country_code} on {import_date}")
        return self.repository.add(batch)

    def get_batch(self, batch_id: str) -> Batch:
        return self.repository.get(batch_id)

    @staticmethod
    def _ensure_open(batch: Batch) -> None:
        if batch.confirmed:
            raise BatchLocked(batch.batch_id)

    @staticmethod
    def _item(batch: Batch, item_id: str) -> LineItem:
        item = batch.items.get(item_id)
        if item is None:
            raise LineItemNotFound(batch.batch_id, item_id)
        return item

    def add_item(
        self,
        batch_id: str,
        product_description: str,
        origin_country_code: str,
        customs_value: Decimal,
        material: Optional[str] = None,
        declared_hs_code: Optional[str] = None,
        quantity: Optional[Decimal] = None,
        weight: Optional[Decimal] = None,
        item_id: Optional[str] = None,
    ) -> LineItem:
        if customs_value < 0:
            raise ValueError(f"Customs value must not be negative: {customs_value}")
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            item = LineItem(
                item_id=item_id or uuid.uuid4().hex[:12],
                product_description=product_description,
                material=material,
                origin_country_code=origin_country_code.upper(),
                declared_hs_code=declared_hs_code,
                customs_value=customs_value,
                quantity=quantity,
                weight=weight,
            )
            batch.items[item.item_id] = item
        return item

    # Processing

    def _evaluate(self, snapshot: ReferenceSnapshot, batch: Batch, item: LineItem) -> _Evaluation:
        evaluation = _Evaluation(item_id=item.item_id)
        classifier = self.engine.classifier_for(snapshot)
        try:
            evaluation.match = classifier.classify(
                item.product_description,
                item.material,
                item.origin_country_code,
                as_of=batch.import_date,
                declared_hs_code=item.declared_hs_code,
                excluded_codes=item.excluded_codes,
            )
        except Unclassified as e:
            evaluation.unclassified = e
            return evaluation

        try:
            classifier.check_confidence(evaluation.match)
        except LowConfidence as e:
            evaluation.low_confidence = e

        unit_price = line_unit_price(item)
        if self.config.declaration_risk_check and unit_price is not None:
            evaluation.declaration_risk = self.engine.check_declaration_risk(
                evaluation.match.hs_code, item.origin_country_code, unit_price
            )
        risky = evaluation.declaration_risk is not None and evaluation.declaration_risk.is_risky

        try:
            rule, overlay = self.engine.resolve_line(
                snapshot, evaluation.match.hs_code, item.origin_country_code, batch.import_date
            )
            evaluation.restrictions = sorted(overlay.restrictions, key=lambda r: r.measure_id)
            held = evaluation.low_confidence is not None or evaluation.restrictions or risky
            if not held and self.config.auto_accept_matches:
                vat_rate = self.engine.vat_rates.get_rate(batch.destination_country_code, batch.import_date)
                evaluation.tax = compute_tax(rule, overlay, vat_rate, item.customs_value, item.quantity)
        except _TAX_ERRORS as e:
            evaluation.error = e
        return evaluation

    def _apply(self, batch: Batch, item: LineItem, evaluation: _Evaluation) -> None:
        if evaluation.unclassified is not None:
            item.error = evaluation.unclassified.to_dict()
            return

        match = evaluation.match
        item.matched_hs_code = match.hs_code
        item.match_confidence = match.confidence
        item.match_source = match.source
        item.restrictions = evaluation.restrictions
        item.declaration_risk = evaluation.declaration_risk
        item.flagged = bool(evaluation.restrictions) or (
            evaluation.declaration_risk is not None and evaluation.declaration_risk.is_risky
        )
        item.error = None
        transition(item, LineItemStatus.MATCHED)

        if evaluation.error is not None:
            item.error = _error_dict(evaluation.error)
            transition(item, LineItemStatus.REVIEWING)
        elif evaluation.low_confidence is not None:
            item.error = evaluation.low_confidence.to_dict()
            transition(item, LineItemStatus.REVIEWING)
        elif item.flagged:
            transition(item, LineItemStatus.REVIEWING)
        elif evaluation.tax is not None:
            self._accept(item, evaluation.tax)

    def _accept(self, item: LineItem, tax: TaxBreakdown) -> None:
        item.apply_tax(tax)
        transition(item, LineItemStatus.APPROVED)
        self.engine.history.record_accepted_match(
            product_key(item.product_description, item.material), item.matched_hs_code
        )

    def process_batch(self, batch_id: str) -> Batch:
        """
        Classify and tax every Pending item of the batch.

        Items are evaluated concurrently against one pinned reference snapshot;
        results are applied one by one under the batch lock. Classification
        failures leave the item Pending, tax failures send it to Reviewing.
        """
        batch = self.repository.get(batch_id)
        snapshot = self.engine.snapshot
        with batch.lock:
            self._ensure_open(batch)
            pending = [item for item in batch.items.values() if item.status == LineItemStatus.PENDING]

        if pending:
            workers = max(1, min(self.config.worker_pool_size, len(pending)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                evaluations = list(pool.map(lambda item: self._evaluate(snapshot, batch, item), pending))
        else:
            evaluations = []

        with batch.lock:
            self._ensure_open(batch)
            for item, evaluation in zip(pending, evaluations):
                if item.status != LineItemStatus.PENDING:
                    continue
                self._apply(batch, item, evaluation)
            self.reconcile(batch_id)

        logger.info(
            f"Batch {batch_id} processed on snapshot {snapshot.version}: "
            f"{self._status_counts(batch)}"
        )
        return batch

    @staticmethod
    def _status_counts(batch: Batch) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in batch.items.values():
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts

    # Review actions

    def _compute_item_tax(self, batch: Batch, item: LineItem) -> TaxBreakdown:
        result = self.engine.compute_line_tax(
            item.matched_hs_code,
            item.origin_country_code,
            batch.destination_country_code,
            batch.import_date,
            item.customs_value,
            item.quantity,
        )
        return result.tax

    def approve_item(self, batch_id: str, item_id: str, hs_code: Optional[str] = None) -> LineItem:
        """
        Approve a Matched or Reviewing item, optionally overriding its code.

        An override is recorded as a manual match (confidence 100). If the tax
        computation fails the item stays in (or moves to) Reviewing with the
        error attached, and the error is raised.
        """
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            item = self._item(batch, item_id)
            if LineItemStatus.APPROVED not in ALLOWED_TRANSITIONS[item.status]:
                raise InvalidTransition(item.item_id, item.status.value, LineItemStatus.APPROVED.value)
            if hs_code is not None:
                code = normalize_hs_code(hs_code)
                if code in item.excluded_codes:
                    raise InvalidTransition(
                        item.item_id, item.status.value, f"{LineItemStatus.APPROVED.value} with disputed code {code}"
                    )
                item.matched_hs_code = code
                item.match_confidence = 100.0
                item.match_source = MatchSource.MANUAL
            try:
                tax = self._compute_item_tax(batch, item)
            except _TAX_ERRORS as e:
                item.error = _error_dict(e)
                item.clear_tax()
                if item.status == LineItemStatus.MATCHED:
                    transition(item, LineItemStatus.REVIEWING)
                logger.warning(f"Approval of {batch_id}/{item_id} blocked: {e}")
                raise
            self._accept(item, tax)
            self.reconcile(batch_id)
            logger.info(f"Line item {batch_id}/{item_id} approved as {item.matched_hs_code}")
            return item

    def dispute_item(self, batch_id: str, item_id: str) -> LineItem:
        """Reject the current candidate; the item returns to Pending and never gets that code again."""
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            item = self._item(batch, item_id)
            transition(item, LineItemStatus.DISPUTED)
            if item.matched_hs_code:
                item.excluded_codes.add(item.matched_hs_code)
            logger.info(f"Line item {batch_id}/{item_id} disputed, excluded {sorted(item.excluded_codes)}")
            item.clear_match()
            item.error = None
            transition(item, LineItemStatus.PENDING)
            self.reconcile(batch_id)
            return item

    def assign_manual_code(self, batch_id: str, item_id: str, hs_code: str) -> LineItem:
        """Manual HS code entry for a Pending (typically unclassified) item."""
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            item = self._item(batch, item_id)
            code = normalize_hs_code(hs_code)
            if code in item.excluded_codes:
                raise InvalidTransition(item.item_id, item.status.value, f"{LineItemStatus.MATCHED.value} with disputed code {code}")
            transition(item, LineItemStatus.MATCHED)
            item.matched_hs_code = code
            item.match_confidence = 100.0
            item.match_source = MatchSource.MANUAL
            item.error = None
            return self.approve_item(batch_id, item_id)

    # Valuation

    def apply_trade_terms(self, batch_id: str, terms: TradeTerms) -> Batch:
        """
        Recompute every item's customs value from its invoice value and the batch's trade terms.

        Batch-level costs are apportioned by invoice value or weight. Approved items are
        re-taxed with the new value. Nothing changes if any item fails.
        """
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            items = list(batch.items.values())
            if not items:
                batch.trade_terms = terms
                return batch

            method = terms.allocation_method
            bases = [allocation_base(item, method) for item in items]
            freight = allocate_amount(terms.international_freight, bases)
            export_inland = allocate_amount(terms.domestic_freight_export, bases)
            import_inland = allocate_amount(terms.domestic_freight_import, bases)
            unloading = allocate_amount(terms.unloading_cost, bases)
            insurance = (
                allocate_amount(terms.insurance_cost, bases) if terms.insurance_cost is not None
                else [None] * len(items)
            )

            snapshot = self.engine.snapshot
            updates = []
            for i, item in enumerate(items):
                invoice_value = item.invoice_value if item.invoice_value is not None else item.customs_value
                duty_rate = vat_rate = None
                if terms.incoterm == "DDP":
                    duty_rate, vat_rate = self._ddp_rates(snapshot, batch, item)
                valuation = calculate_customs_value(
                    terms.incoterm,
                    invoice_value,
                    international_freight=freight[i],
                    domestic_freight_export=export_inland[i],
                    domestic_freight_import=import_inland[i],
                    unloading_cost=unloading[i],
                    insurance_cost=insurance[i],
                    duty_rate=duty_rate,
                    vat_rate=vat_rate,
                    default_insurance_rate=self.config.default_insurance_rate,
                )
                tax = None
                if item.status == LineItemStatus.APPROVED:
                    tax = self.engine.compute_line_tax(
                        item.matched_hs_code, item.origin_country_code, batch.destination_country_code,
                        batch.import_date, valuation.customs_value, item.quantity, snapshot=snapshot,
                    ).tax
                updates.append((item, invoice_value, valuation.customs_value, tax))

            for item, invoice_value, customs_value, tax in updates:
                item.invoice_value = invoice_value
                item.customs_value = customs_value
                if tax is not None:
                    item.apply_tax(tax)
            batch.trade_terms = terms
            self.reconcile(batch_id)
            logger.info(f"Trade terms {terms.incoterm} applied to batch {batch_id}")
            return batch

    def _ddp_rates(self, snapshot: ReferenceSnapshot, batch: Batch, item: LineItem):
        if not item.matched_hs_code:
            raise ValuationError(
                f"DDP valuation of item {item.item_id} needs a classified HS code",
                {"item_id": item.item_id},
            )
        try:
            rule, overlay = self.engine.resolve_line(
                snapshot, item.matched_hs_code, item.origin_country_code, batch.import_date
            )
            vat_rate = self.engine.vat_rates.get_rate(batch.destination_country_code, batch.import_date)
        except (TariffNotFound, AmbiguousMeasure, MissingVatRate) as e:
            raise ValuationError(f"DDP valuation of item {item.item_id} failed: {e.message}", e.context) from e
        if rule.duty_kind != DutyKind.AD_VALOREM:
            raise ValuationError(
                f"DDP valuation of item {item.item_id} needs an ad valorem duty",
                {"item_id": item.item_id, "hs_code": item.matched_hs_code},
            )
        duty_rate = overlay.preferential_duty if overlay.preferential_duty is not None else rule.duty_rate
        return duty_rate + overlay.anti_dumping + overlay.countervailing, vat_rate

    # Reconciliation and confirmation

    def reconcile(self, batch_id: str) -> Batch:
        """Recompute batch totals from the items' computed tax fields."""
        batch = self.repository.get(batch_id)
        with batch.lock:
            totals = dict(value=ZERO, customs=ZERO, duty=ZERO, vat=ZERO, other=ZERO, total=ZERO)
            by_hs_code: Dict[str, Dict[str, Any]] = {}
            for item in batch.items.values():
                totals["value"] += item.invoice_value if item.invoice_value is not None else item.customs_value
                totals["customs"] += item.customs_value
                if item.total_tax is None:
                    continue
                other = item.anti_dumping_amount + item.countervailing_amount
                totals["duty"] += item.duty_amount
                totals["vat"] += item.vat_amount
                totals["other"] += other
                totals["total"] += item.total_tax
                group = by_hs_code.setdefault(item.matched_hs_code, {
                    "items": 0, "customs_value": ZERO, "duty": ZERO, "vat": ZERO, "other_tax": ZERO, "total_tax": ZERO,
                })
                group["items"] += 1
                group["customs_value"] += item.customs_value
                group["duty"] += item.duty_amount
                group["vat"] += item.vat_amount
                group["other_tax"] += other
                group["total_tax"] += item.total_tax

            batch.total_value = totals["value"]
            batch.total_customs_value = totals["customs"]
            batch.total_duty = totals["duty"]
            batch.total_vat = totals["vat"]
            batch.total_other_tax = totals["other"]
            batch.total_tax = totals["total"]
            if batch.clearance_type == ClearanceType.VAT_DEFERRED:
                batch.payable_vat, batch.deferred_vat = ZERO, totals["vat"]
            else:
                batch.payable_vat, batch.deferred_vat = totals["vat"], ZERO
            batch.by_hs_code = dict(sorted(by_hs_code.items()))
            return batch

    def confirm_batch(
        self,
        batch_id: str,
        confirmed_by: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Batch:
        """
        Confirm a batch whose items are all Approved.

        Each item with a quantity has its unit price recorded as a pending
        declaration for its code and origin.

        Args:
            batch_id: Batch to confirm
            confirmed_by: Operator recorded on the batch
            cancel_event: Set by another thread to abort before the commit point

        Raises:
            ConfirmationError: some items are not Approved (batch stays open)
            ConfirmationCancelled: cancel_event was set before commit
            BatchLocked: the batch is already confirmed
        """
        batch = self.repository.get(batch_id)
        with batch.lock:
            self._ensure_open(batch)
            not_approved = {
                item.item_id: item.status.value
                for item in batch.items.values()
                if item.status != LineItemStatus.APPROVED
            }
            if not_approved:
                logger.info(f"Batch {batch_id} not confirmed: {not_approved}")
                raise ConfirmationError(batch_id, not_approved)
            self.reconcile(batch_id)
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Confirmation of batch {batch_id} cancelled before commit")
                raise ConfirmationCancelled(batch_id)
            recorded = self._record_declarations(batch)
            # Commit point: nothing below may fail or be undone.
            batch.confirmed = True
            batch.confirmed_at = datetime.now(timezone.utc)
            batch.confirmed_by = confirmed_by
        logger.info(
            f"Batch {batch_id} confirmed by {confirmed_by}: total tax {batch.total_tax}, "
            f"{recorded} declared unit prices recorded"
        )
        return batch

    def _record_declarations(self, batch: Batch) -> int:
        records = []
        for item in batch.items.values():
            unit_price = line_unit_price(item)
            if unit_price is None or not item.matched_hs_code:
                continue
            records.append(DeclarationRecord(
                hs_code=item.matched_hs_code,
                origin_country_code=item.origin_country_code,
                unit_price=unit_price,
                declared_on=batch.import_date,
                batch_id=batch.batch_id,
                item_id=item.item_id,
            ))
        return self.engine.declarations.record(records) if records else 0

    def record_declaration_result(self, batch_id: str, result: DeclarationResult) -> int:
        """
        Record what customs made of a confirmed batch's declared unit prices.

        Only declarations still pending change, so a batch's outcome is set once.
        Decided declarations feed the risk check of later batches.

        Raises:
            BatchNotConfirmed: the batch is still open
            ValueError: result is pending
        """
        batch = self.repository.get(batch_id)
        with batch.lock:
            if not batch.confirmed:
                raise BatchNotConfirmed(batch_id)
        updated = self.engine.declarations.update_result(batch_id, DeclarationResult(result))
        logger.info(f"Batch {batch_id} declarations marked {DeclarationResult(result).value}: {updated} updated")
        return updated

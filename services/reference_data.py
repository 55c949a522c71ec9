# WORKFLOW: Immutable reference snapshots, swap-the-pointer store and per-category sync locks.
# Used by: services/engine.py, api/routers/sync.py, etl/loader.py
# Functions:
# 1. ReferenceSnapshot - Validated rules/measures/agreements/nomenclature/groups with derived indexes
# 2. ReferenceDataStore.current() / swap() / update() - Atomic snapshot replacement
# 3. SyncCoordinator.run() - Advisory lock per sync_type, load, rebuild, swap
#
# Sync flow: acquire lock(sync_type) -> load records (outside the swap path) ->
# rebuild snapshot with that category replaced -> integrity checks -> swap -> release.
# Readers keep whatever snapshot they obtained; they never see a half-built one.

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from core.errors import SyncInProgress
from core.models import NomenclatureEntry, TariffRule, TradeAgreement, TradeMeasure, normalize_area
from etl.validators import check_snapshot_integrity
from services.description_index import DescriptionIndex
from services.measure_overlay import MeasureOverlay
from services.tariff_registry import TariffRegistry

logger = logging.getLogger(__name__)

SYNC_TYPES = ("tariff_rules", "trade_measures", "trade_agreements", "nomenclature", "country_groups")


def _groups(country_groups: Optional[Mapping[str, Iterable[str]]]) -> Dict[str, FrozenSet[str]]:
    return {
        normalize_area(group): frozenset(normalize_area(member) for member in members)
        for group, members in (country_groups or {}).items()
    }


class ReferenceSnapshot:
    """One consistent version of the reference data and the indexes derived from it."""

    def __init__(
        self,
        rules: Iterable[TariffRule] = (),
        measures: Iterable[TradeMeasure] = (),
        agreements: Iterable[TradeAgreement] = (),
        nomenclature: Iterable[NomenclatureEntry] = (),
        country_groups: Optional[Mapping[str, Iterable[str]]] = None,
        version: str = "empty",
        erga_omnes_fallback: bool = True,
    ):
        self.rules: Tuple[TariffRule, ...] = tuple(rules)
        self.measures: Tuple[TradeMeasure, ...] = tuple(measures)
        self.agreements: Tuple[TradeAgreement, ...] = tuple(agreements)
        self.nomenclature: Tuple[NomenclatureEntry, ...] = tuple(nomenclature)
        self.country_groups: Dict[str, FrozenSet[str]] = _groups(country_groups)
        self.version = version
        self.erga_omnes_fallback = erga_omnes_fallback
        self.loaded_at = datetime.now(timezone.utc)

        self.warnings = check_snapshot_integrity(self.rules, self.measures, self.agreements)
        self.registry = TariffRegistry(self.rules, erga_omnes_fallback=erga_omnes_fallback)
        self.overlay = MeasureOverlay(self.measures, self.agreements, self.registry, self.country_groups)
        self.index = DescriptionIndex(self.nomenclature, self.rules)

    def counts(self) -> Dict[str, int]:
        return {
            "tariff_rules": len(self.rules),
            "trade_measures": len(self.measures),
            "trade_agreements": len(self.agreements),
            "nomenclature": len(self.nomenclature),
            "country_groups": len(self.country_groups),
        }

    def replace(self, sync_type: str, records: Any, version: str) -> "ReferenceSnapshot":
        """New snapshot with one category replaced; this snapshot is left untouched."""
        categories = {
            "tariff_rules": self.rules,
            "trade_measures": self.measures,
            "trade_agreements": self.agreements,
            "nomenclature": self.nomenclature,
            "country_groups": self.country_groups,
        }
        if sync_type not in categories:
            raise ValueError(f"Unknown sync type: {sync_type}")
        categories[sync_type] = records
        return ReferenceSnapshot(
            rules=categories["tariff_rules"],
            measures=categories["trade_measures"],
            agreements=categories["trade_agreements"],
            nomenclature=categories["nomenclature"],
            country_groups=categories["country_groups"],
            version=version,
            erga_omnes_fallback=self.erga_omnes_fallback,
        )


class ReferenceDataStore:
    """Holds the current snapshot; replacement is a single reference assignment."""

    def __init__(self, snapshot: Optional[ReferenceSnapshot] = None):
        self._snapshot = snapshot or ReferenceSnapshot()
        self._swap_lock = threading.Lock()

    def current(self) -> ReferenceSnapshot:
        return self._snapshot

    def swap(self, snapshot: ReferenceSnapshot) -> ReferenceSnapshot:
        with self._swap_lock:
            previous, self._snapshot = self._snapshot, snapshot
        logger.info(f"Reference snapshot swapped: {previous.version} -> {snapshot.version}")
        return previous

    def update(self, rebuild: Callable[[ReferenceSnapshot], ReferenceSnapshot]) -> ReferenceSnapshot:
        """Read-rebuild-swap under the swap lock so concurrent category syncs do not drop each other."""
        with self._swap_lock:
            snapshot = rebuild(self._snapshot)
            previous, self._snapshot = self._snapshot, snapshot
        logger.info(f"Reference snapshot swapped: {previous.version} -> {snapshot.version}")
        return snapshot


@dataclass(frozen=True)
class SyncReport:
    sync_type: str
    version: str
    records: int
    duration_ms: float
    warnings: Tuple[str, ...] = ()


class SyncCoordinator:
    """Mutually exclusive syncs per sync_type; different types may run concurrently."""

    def __init__(self, store: ReferenceDataStore):
        self.store = store
        self._locks = {sync_type: threading.Lock() for sync_type in SYNC_TYPES}

    def is_running(self, sync_type: str) -> bool:
        return self._locks[sync_type].locked()

    def run(self, sync_type: str, loader: Callable[[], Any], version: Optional[str] = None) -> SyncReport:
        """
        Run one reference-data sync.

        Args:
            sync_type: One of SYNC_TYPES
            loader: Callable returning the full new record set for the category
            version: Version tag; generated from the clock when omitted

        Raises:
            SyncInProgress: a sync of the same type holds the lock
            ReferenceDataIntegrityError: the rebuilt snapshot failed validation (nothing is swapped)
        """
        if sync_type not in self._locks:
            raise ValueError(f"Unknown sync type: {sync_type}")
        lock = self._locks[sync_type]
        if not lock.acquire(blocking=False):
            raise SyncInProgress(sync_type)
        try:
            started = time.monotonic()
            records = loader()
            if not isinstance(records, Mapping):
                records = list(records)
            tag = version or f"{sync_type}-{datetime.now(timezone.utc):%Y%m%d%H%M%S%f}"
            snapshot = self.store.update(lambda current: current.replace(sync_type, records, tag))
            report = SyncReport(
                sync_type=sync_type,
                version=tag,
                records=len(records),
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                warnings=tuple(snapshot.warnings),
            )
            logger.info(f"Sync {sync_type} finished: {report.records} records, version {tag}, {report.duration_ms} ms")
            return report
        finally:
            lock.release()

# WORKFLOW: Shared FastAPI dependencies and error mapping.
# Used by: api/routers/*
# Functions:
# 1. get_tariff_engine() - Lazy-loaded engine (snapshot from the database, SQL history, VAT and declarations)
# 2. get_batch_service() - Batch workflow bound to the engine
# 3. get_sync_coordinator() / get_reference_db() - Reference-data sync collaborators
# 4. to_http_exception() - Engine error -> HTTPException with code and context
#
# Tests replace these through app.dependency_overrides.

import logging
import threading

from fastapi import HTTPException, status

from core.config import settings
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
    ReferenceDataIntegrityError,
    SyncInProgress,
    TariffEngineError,
    TariffNotFound,
    Unclassified,
    ValuationError,
)
from db.session import get_engine, get_session_factory
from etl.loader import load_snapshot
from services.batch_reconciliation import BatchReconciliation
from services.engine import TariffEngine
from services.declaration_risk import SqlDeclarationHistory
from services.match_history import SqlMatchHistory
from services.reference_data import ReferenceDataStore, SyncCoordinator
from services.vat_rates import SqlVatRates

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_batch_service = None
_sync_coordinator = None


def get_tariff_engine() -> TariffEngine:
    global _engine
    with _lock:
        if _engine is None:
            snapshot = load_snapshot(get_engine(), erga_omnes_fallback=settings.erga_omnes_fallback)
            session_factory = get_session_factory()
            _engine = TariffEngine(
                store=ReferenceDataStore(snapshot),
                history=SqlMatchHistory(session_factory),
                vat_rates=SqlVatRates(session_factory),
                declarations=SqlDeclarationHistory(session_factory),
                config=settings,
            )
            logger.info(f"Tariff engine initialised on snapshot {snapshot.version}")
    return _engine


def get_batch_service() -> BatchReconciliation:
    global _batch_service
    engine = get_tariff_engine()
    with _lock:
        if _batch_service is None:
            _batch_service = BatchReconciliation(engine)
    return _batch_service


def get_sync_coordinator() -> SyncCoordinator:
    global _sync_coordinator
    engine = get_tariff_engine()
    with _lock:
        if _sync_coordinator is None:
            _sync_coordinator = SyncCoordinator(engine.store)
    return _sync_coordinator


def get_reference_db():
    return get_engine()


_STATUS_BY_ERROR = [
    ((TariffNotFound, BatchNotFound, LineItemNotFound), status.HTTP_404_NOT_FOUND),
    (
        (AmbiguousMeasure, ConfirmationError, ConfirmationCancelled, BatchLocked, BatchNotConfirmed,
         SyncInProgress, InvalidTransition, ReferenceDataIntegrityError),
        status.HTTP_409_CONFLICT,
    ),
    ((MissingVatRate, Unclassified, LowConfidence, ValuationError), status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def to_http_exception(error: TariffEngineError) -> HTTPException:
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_dict())

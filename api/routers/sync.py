# WORKFLOW: Reference-data sync trigger.
# Used by: Scheduled jobs after an ETL import, operators
# Endpoints:
# 1. POST /sync/{sync_type} - Reload one category from the database and swap the snapshot
# 2. GET /sync/status - Current snapshot version, record counts and running syncs
#
# Sync flow: lock(sync_type) -> load_category() -> rebuild + integrity checks -> swap.
# A second sync of the same type while one runs is rejected with 409, not queued.

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import get_reference_db, get_sync_coordinator, to_http_exception
from api.schemas.response import SyncResponse
from core.errors import TariffEngineError
from etl.loader import load_category
from services.reference_data import SYNC_TYPES, SyncCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status")
def sync_status(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    snapshot = coordinator.store.current()
    return {
        "version": snapshot.version,
        "loaded_at": snapshot.loaded_at.isoformat(),
        "counts": snapshot.counts(),
        "running": [sync_type for sync_type in SYNC_TYPES if coordinator.is_running(sync_type)],
        "warnings": list(snapshot.warnings),
    }


@router.post("/{sync_type}", response_model=SyncResponse)
def run_sync(
    sync_type: str,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
    db_engine=Depends(get_reference_db),
):
    if sync_type not in SYNC_TYPES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown sync type '{sync_type}', expected one of {list(SYNC_TYPES)}",
        )
    logger.info(f"Sync {sync_type} requested")
    try:
        report = coordinator.run(sync_type, lambda: load_category(db_engine, sync_type))
    except TariffEngineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"Sync {sync_type} failed reading the database: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Reference database unavailable")

    return SyncResponse(
        sync_type=report.sync_type,
        version=report.version,
        records=report.records,
        duration_ms=report.duration_ms,
        warnings=list(report.warnings),
    )

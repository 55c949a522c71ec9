# WORKFLOW: Learned-match history, the only shared mutable state of the engine.
# Used by: services/classifier.py (History tier, read), services/batch_reconciliation.py (accepted matches, write)
# Functions:
# 1. get() - Current MatchRecord for a product key
# 2. record_accepted_match() - Upsert with atomic increment
#
# Stores:
# - InMemoryMatchHistory: per-process dict guarded by a lock
# - SqlMatchHistory: match_records table; UPDATE ... SET match_count = CASE ... END,
#   INSERT on miss, retry when a concurrent insert wins the race
#
# A count belongs to the stored code: accepting a different code restarts it at 1.
# Counts never decrease for a (key, code) pair and records are never deleted.

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from core.models import MatchRecord
from db.models import MatchRecords

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MatchHistoryStore(ABC):
    """Narrow upsert-with-increment interface over the match history."""

    @abstractmethod
    def get(self, product_key: str) -> Optional[MatchRecord]:
        ...

    @abstractmethod
    def record_accepted_match(self, product_key: str, hs_code: str) -> MatchRecord:
        """Create the record with count 1, increment it for the same code, or restart at 1 for a new code."""
        ...


class InMemoryMatchHistory(MatchHistoryStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, MatchRecord] = {}

    def get(self, product_key: str) -> Optional[MatchRecord]:
        with self._lock:
            return self._records.get(product_key)

    def record_accepted_match(self, product_key: str, hs_code: str) -> MatchRecord:
        with self._lock:
            existing = self._records.get(product_key)
            if existing and existing.matched_hs_code == hs_code:
                count = existing.match_count + 1
            else:
                count = 1
            record = MatchRecord(
                product_key=product_key,
                matched_hs_code=hs_code,
                match_count=count,
                last_matched_at=_now(),
            )
            self._records[product_key] = record
        if existing and existing.matched_hs_code != hs_code:
            logger.info(f"Match history for '{product_key}' moved from {existing.matched_hs_code} to {hs_code}")
        return record


class SqlMatchHistory(MatchHistoryStore):
    """Match history backed by the match_records table."""

    def __init__(self, session_factory, max_attempts: int = 5):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    @staticmethod
    def _to_record(row: MatchRecords) -> MatchRecord:
        return MatchRecord(
            product_key=row.product_key,
            matched_hs_code=row.matched_hs_code,
            match_count=row.match_count,
            last_matched_at=row.last_matched_at,
        )

    def get(self, product_key: str) -> Optional[MatchRecord]:
        with self.session_factory() as session:
            row = session.get(MatchRecords, product_key)
            return self._to_record(row) if row else None

    def record_accepted_match(self, product_key: str, hs_code: str) -> MatchRecord:
        for attempt in range(1, self.max_attempts + 1):
            with self.session_factory() as session:
                now = _now()
                result = session.execute(
                    update(MatchRecords)
                    .where(MatchRecords.product_key == product_key)
                    .values(
                        match_count=case(
                            (MatchRecords.matched_hs_code == hs_code, MatchRecords.match_count + 1),
                            else_=1,
                        ),
                        matched_hs_code=hs_code,
                        last_matched_at=now,
                    )
                )
                if result.rowcount == 0:
                    session.add(MatchRecords(
                        product_key=product_key,
                        matched_hs_code=hs_code,
                        match_count=1,
                        last_matched_at=now,
                    ))
                try:
                    session.commit()
                except IntegrityError:
                    # A concurrent writer inserted the key first; the next attempt increments it.
                    session.rollback()
                    logger.debug(f"Match record insert race for '{product_key}', attempt {attempt}")
                    continue
                row = session.get(MatchRecords, product_key)
                return self._to_record(row)
        raise RuntimeError(f"Could not record match for '{product_key}' after {self.max_attempts} attempts")

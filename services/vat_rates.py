# WORKFLOW: Destination-country VAT rate lookup, keyed by (destination country, date).
# Used by: services/batch_reconciliation.py, api/routers/tax.py
# Functions:
# 1. get_rate() - Standard VAT rate in force, or MissingVatRate
#
# The tax engine never resolves VAT itself; callers pass the rate returned here.
# There is no default rate: a missing row is a hard failure.

import logging
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import or_, select

from core.errors import MissingVatRate
from core.models import window_covers
from db.models import VatRates

logger = logging.getLogger(__name__)


class VatRateProvider(ABC):
    @abstractmethod
    def get_rate(self, destination_country_code: Optional[str], as_of: Optional[date]) -> Decimal:
        ...


class InMemoryVatRates(VatRateProvider):
    def __init__(self, rates: Optional[Dict[str, List[Tuple[Decimal, date, Optional[date]]]]] = None):
        self._rates: Dict[str, List[Tuple[Decimal, date, Optional[date]]]] = {}
        for country, windows in (rates or {}).items():
            for rate, valid_from, valid_to in windows:
                self.add(country, rate, valid_from, valid_to)

    def add(self, country_code: str, rate: Decimal, valid_from: date, valid_to: Optional[date] = None):
        self._rates.setdefault(country_code.upper(), []).append((Decimal(str(rate)), valid_from, valid_to))

    def get_rate(self, destination_country_code: Optional[str], as_of: Optional[date]) -> Decimal:
        if not destination_country_code or as_of is None:
            raise MissingVatRate(destination_country_code, as_of)
        in_force = [
            (valid_from, rate)
            for rate, valid_from, valid_to in self._rates.get(destination_country_code.upper(), ())
            if window_covers(valid_from, valid_to, as_of)
        ]
        if not in_force:
            raise MissingVatRate(destination_country_code, as_of)
        return max(in_force)[1]


class SqlVatRates(VatRateProvider):
    """VAT rates from the vat_rates table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_rate(self, destination_country_code: Optional[str], as_of: Optional[date]) -> Decimal:
        if not destination_country_code or as_of is None:
            raise MissingVatRate(destination_country_code, as_of)
        stmt = (
            select(VatRates.standard_rate)
            .where(VatRates.country_code == destination_country_code.upper())
            .where(VatRates.valid_from <= as_of)
            .where(or_(VatRates.valid_to.is_(None), VatRates.valid_to >= as_of))
            .order_by(VatRates.valid_from.desc())
            .limit(1)
        )
        with self.session_factory() as session:
            rate = session.execute(stmt).scalar_one_or_none()
        if rate is None:
            logger.warning(f"No VAT rate for {destination_country_code} on {as_of}")
            raise MissingVatRate(destination_country_code, as_of)
        return Decimal(str(rate))

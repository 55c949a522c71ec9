# WORKFLOW: Shared reference data and engine fixtures for the test suite.
# Used by: tests/test_*.py
# Fixtures:
# 1. make_snapshot() - Apparel, fasteners, citrus, wine and phone reference data
# 2. make_vat_rates() - DE/NL/FR VAT table
# 3. make_engine() - TariffEngine over in-memory histories and VAT
# 4. sqlite_engine - Fresh in-memory database with all tables created
#
# Dates: rules from 2020-01-01, anti-dumping/countervailing from 2021-01-01,
# EU-VN agreement from 2020-08-01. Tests use 2024-03-01 unless noted.

from datetime import date
from decimal import Decimal

import pytest

from core.config import Settings
from core.models import NomenclatureEntry, TariffRule, TradeAgreement, TradeMeasure
from db.session import build_engine, init_db
from services.engine import TariffEngine
from services.match_history import InMemoryMatchHistory
from services.reference_data import ReferenceDataStore, ReferenceSnapshot
from services.vat_rates import InMemoryVatRates

AS_OF = date(2024, 3, 1)
START = date(2020, 1, 1)


def sample_nomenclature():
    rows = [
        ("61", "Articles of apparel and clothing accessories, knitted or crocheted", False),
        ("6109", "T-shirts, singlets and other vests, knitted or crocheted", False),
        ("61091000", "Of cotton", True),
        ("61099020", "Of man-made fibres", True),
        ("6110", "Jerseys, pullovers, cardigans, waistcoats and similar articles, knitted or crocheted", False),
        ("61102000", "Of cotton", True),
        ("73", "Articles of iron or steel", False),
        ("7318", "Screws, bolts, nuts, coach screws, screw hooks, rivets, cotters, washers and similar articles", False),
        ("73181500", "Other screws and bolts, whether or not with their nuts or washers", True),
        ("08", "Edible fruit and nuts", False),
        ("0805", "Citrus fruit, fresh or dried", False),
        ("08051000", "Oranges", True),
        ("22", "Beverages, spirits and vinegar", False),
        ("2204", "Wine of fresh grapes", False),
        ("22042100", "In containers holding 2 litres or less", True),
        ("85171300", "Smartphones", True),
    ]
    return [NomenclatureEntry(hs_code=code, description=text, is_leaf=leaf) for code, text, leaf in rows]


def sample_rules():
    def rule(code, origin, rate, **kwargs):
        kwargs.setdefault("valid_from", START)
        return TariffRule(hs_code=code, origin_country_code=origin, duty_rate=Decimal(rate),
                          legal_base="R2658/87", data_source="test", **kwargs)

    return [
        rule("61091000", "ERGA OMNES", "12"),
        rule("61099020", "ERGA OMNES", "12"),
        rule("61102000", "ERGA OMNES", "12"),
        rule("73181500", "ERGA OMNES", "3.7"),
        rule("73181500", "CN", "3.7", valid_to=date(2022, 12, 31)),
        rule("73181500", "CN", "3.5", valid_from=date(2023, 1, 1)),
        rule("08051000", "ERGA OMNES", "16"),
        rule("22042100", "ERGA OMNES", "0.50", duty_kind="FixedPerUnit", unit="l"),
        rule("85171300", "ERGA OMNES", "0"),
    ]


def sample_measures():
    return [
        TradeMeasure(
            measure_id="AD-7318-CN", measure_type="AntiDumping", hs_code_prefix="7318",
            geographical_area=["CN"], duty_expression="85%", valid_from=date(2021, 1, 1),
            conditions={"additional_code": "C999"},
        ),
        TradeMeasure(
            measure_id="CVD-731815-CN", measure_type="Countervailing", hs_code_prefix="731815",
            geographical_area=["CN"], duty_expression="5.5%", valid_from=date(2021, 1, 1),
        ),
        TradeMeasure(
            measure_id="Q-0805", measure_type="Quota", hs_code_prefix="0805",
            geographical_area=["ERGA OMNES"], excluded_areas=["MA"], valid_from=START,
            conditions={"order_number": "09.1234", "volume": "5000", "unit": "t"},
        ),
        TradeMeasure(
            measure_id="SPS-0805", measure_type="SpsRequired", hs_code_prefix="0805",
            geographical_area=["ERGA OMNES"], valid_from=START,
            conditions={"certificate_code": "PHYTO"},
        ),
    ]


def sample_agreements():
    return [
        TradeAgreement(agreement_code="EU-VN", country_scope=["VN"], preferential_rate=Decimal("0"),
                       valid_from=date(2020, 8, 1), proof_document="EUR.1"),
        TradeAgreement(agreement_code="GSP", country_scope=["GSP"], preferential_rate=Decimal("9.6"),
                       valid_from=START, hs_code_prefix="61", proof_document="REX"),
    ]


SAMPLE_GROUPS = {"GSP": {"BD", "PK", "IN"}}


def make_snapshot(version="test-1", **overrides):
    data = dict(
        rules=sample_rules(),
        measures=sample_measures(),
        agreements=sample_agreements(),
        nomenclature=sample_nomenclature(),
        country_groups=SAMPLE_GROUPS,
        version=version,
    )
    data.update(overrides)
    return ReferenceSnapshot(**data)


def make_vat_rates():
    vat = InMemoryVatRates()
    vat.add("DE", Decimal("19"), START)
    vat.add("NL", Decimal("21"), START)
    vat.add("FR", Decimal("20"), START)
    return vat


def make_settings(**overrides):
    values = dict(database_url="sqlite://", worker_pool_size=4)
    values.update(overrides)
    return Settings(**values)


def make_engine(snapshot=None, history=None, declarations=None, **settings_overrides):
    return TariffEngine(
        store=ReferenceDataStore(snapshot or make_snapshot()),
        history=history or InMemoryMatchHistory(),
        declarations=declarations,
        vat_rates=make_vat_rates(),
        config=make_settings(**settings_overrides),
    )


@pytest.fixture
def snapshot():
    return make_snapshot()


@pytest.fixture
def engine():
    return make_engine()


@pytest.fixture
def sqlite_engine():
    db_engine = build_engine("sqlite://")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()

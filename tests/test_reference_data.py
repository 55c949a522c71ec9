# WORKFLOW: Tests for reference snapshots, sync coordination and the database loader.
# Used by: CI/CD pipelines, development testing
# Test scenarios:
# 1. Snapshot replacement leaves readers on their version
# 2. SyncInProgress for concurrent syncs of one type; other types proceed
# 3. Integrity failures never swap a snapshot
# 4. Loading every category from SQLite through pandas

import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import AS_OF, START, make_snapshot, sample_rules
from core.errors import ReferenceDataIntegrityError, SyncInProgress
from core.models import TariffRule
from db.models import (
    CountryGroupMembers,
    GoodsNomenclature,
    TariffRules,
    TradeAgreements,
    TradeMeasures,
)
from etl.loader import load_category, load_snapshot
from services.reference_data import ReferenceDataStore, SyncCoordinator


class TestReferenceDataStore:
    def test_replace_builds_new_snapshot(self):
        original = make_snapshot()
        rules = [rule for rule in sample_rules() if rule.hs_code != "08051000"]
        replaced = original.replace("tariff_rules", rules, "test-2")
        assert replaced.version == "test-2"
        assert replaced.registry.find_base_duty("08051000", "ES", AS_OF) is None
        assert original.registry.find_base_duty("08051000", "ES", AS_OF) is not None
        assert replaced.measures == original.measures

    def test_replace_unknown_category(self):
        with pytest.raises(ValueError):
            make_snapshot().replace("vat", [], "x")

    def test_reader_keeps_pinned_snapshot(self):
        store = ReferenceDataStore(make_snapshot())
        pinned = store.current()
        store.swap(make_snapshot(version="test-2"))
        assert pinned.version == "test-1"
        assert store.current().version == "test-2"

    def test_counts(self):
        counts = make_snapshot().counts()
        assert counts["tariff_rules"] == 9
        assert counts["country_groups"] == 1


class TestSyncCoordinator:
    def setup_method(self):
        self.store = ReferenceDataStore(make_snapshot())
        self.coordinator = SyncCoordinator(self.store)

    def test_sync_swaps_category(self):
        new_rule = TariffRule(hs_code="95030000", origin_country_code="ERGA OMNES",
                              duty_rate=Decimal("4.7"), valid_from=START)
        report = self.coordinator.run("tariff_rules", lambda: sample_rules() + [new_rule], version="v2")
        assert report.version == "v2"
        assert report.records == 10
        assert self.store.current().registry.find_base_duty("95030000", "US", AS_OF) == new_rule

    def test_concurrent_sync_of_same_type_rejected(self):
        started, release = threading.Event(), threading.Event()
        results = {}

        def slow_loader():
            started.set()
            release.wait(5)
            return sample_rules()

        def run():
            results["report"] = self.coordinator.run("tariff_rules", slow_loader, version="slow")

        thread = threading.Thread(target=run)
        thread.start()
        assert started.wait(5)
        assert self.coordinator.is_running("tariff_rules")

        with pytest.raises(SyncInProgress):
            self.coordinator.run("tariff_rules", sample_rules)

        report = self.coordinator.run("country_groups", lambda: {"GSP": {"BD"}}, version="groups")
        assert report.records == 1

        release.set()
        thread.join(5)
        assert results["report"].version == "slow"
        assert not self.coordinator.is_running("tariff_rules")
        # both category syncs survive: the later swap rebuilt on top of the earlier one
        assert self.store.current().country_groups == {"GSP": frozenset({"BD"})}

    def test_integrity_failure_keeps_current_snapshot(self):
        overlapping = sample_rules() + [
            TariffRule(hs_code="61091000", origin_country_code="ERGA OMNES", duty_rate=Decimal("8"),
                       valid_from=date(2023, 1, 1)),
        ]
        with pytest.raises(ReferenceDataIntegrityError):
            self.coordinator.run("tariff_rules", lambda: overlapping)
        assert self.store.current().version == "test-1"
        assert not self.coordinator.is_running("tariff_rules")

    def test_unknown_sync_type(self):
        with pytest.raises(ValueError):
            self.coordinator.run("vat", list)


def _seed(db_engine):
    session_factory = sessionmaker(bind=db_engine)
    with session_factory() as session:
        session.add_all([
            GoodsNomenclature(goods_code="6109", description="T-shirts, singlets and other vests", level=4,
                              valid_from=START, is_leaf=False),
            GoodsNomenclature(goods_code="61091000", description="Of cotton", level=8,
                              valid_from=START, is_leaf=True),
            GoodsNomenclature(goods_code="61099020", description="Of man-made fibres", level=8,
                              valid_from=START, valid_to=date(2021, 12, 31), is_leaf=True),
            TariffRules(goods_code="61091000", origin_group="ERGA OMNES",
                        duty_components=[{"type": "ad_valorem", "value": "12", "unit": "percent"}],
                        legal_base_id="R2658/87", data_source="TARIC", valid_from=START),
            TariffRules(goods_code="22042100", origin_group="ERGA OMNES",
                        duty_components=[{"type": "specific", "value": "0.50", "currency": "EUR",
                                          "per": 1, "unit": "l"}],
                        valid_from=START),
            TradeMeasures(measure_id="AD-6109-CN", measure_type="AntiDumping", goods_code_prefix="6109",
                          geographical_area=["CN"], duty_expression="20%",
                          conditions={"additional_code": "C001"}, valid_from=START),
            TradeMeasures(measure_id="L-6109", measure_type="LicenseRequired", goods_code_prefix="6109",
                          geographical_area=["ERGA OMNES"], excluded_areas=["GSP"], valid_from=START),
            TradeAgreements(agreement_code="GSP", country_code="BD", preferential_rate=Decimal("9.6"),
                            goods_code_prefix="61", document_code="REX", valid_from=START),
            TradeAgreements(agreement_code="GSP", country_code="PK", preferential_rate=Decimal("9.6"),
                            goods_code_prefix="61", document_code="REX", valid_from=START),
            CountryGroupMembers(group_code="GSP", country_code="BD"),
            CountryGroupMembers(group_code="GSP", country_code="PK"),
        ])
        session.commit()


class TestLoader:
    def test_load_snapshot(self, sqlite_engine):
        _seed(sqlite_engine)
        snapshot = load_snapshot(sqlite_engine, version="db-test")
        assert snapshot.version == "db-test"
        assert snapshot.counts() == {
            "tariff_rules": 2,
            "trade_measures": 2,
            "trade_agreements": 1,
            "nomenclature": 2,
            "country_groups": 1,
        }

        rule = snapshot.registry.resolve_base_duty("61091000", "US", AS_OF)
        assert rule.duty_rate == Decimal("12")
        assert rule.legal_base == "R2658/87"
        wine = snapshot.registry.resolve_base_duty("22042100", "FR", AS_OF)
        assert wine.duty_kind.value == "FixedPerUnit"
        assert wine.unit == "l"

        overlay = snapshot.overlay.resolve_measures("61091000", "CN", AS_OF)
        assert overlay.anti_dumping == Decimal("20")
        assert {r.measure_id for r in overlay.restrictions} == {"L-6109"}

        preference = snapshot.overlay.resolve_measures("61091000", "BD", AS_OF)
        assert preference.preferential_duty == Decimal("9.6")
        assert preference.proof_document == "REX"
        assert preference.restrictions == frozenset()

    def test_load_category(self, sqlite_engine):
        _seed(sqlite_engine)
        agreements = load_category(sqlite_engine, "trade_agreements")
        assert len(agreements) == 1
        assert agreements[0].country_scope == frozenset({"BD", "PK"})
        assert load_category(sqlite_engine, "country_groups") == {"GSP": frozenset({"BD", "PK"})}

    def test_empty_database(self, sqlite_engine):
        snapshot = load_snapshot(sqlite_engine)
        assert snapshot.counts()["tariff_rules"] == 0

    def test_sync_from_database(self, sqlite_engine):
        _seed(sqlite_engine)
        store = ReferenceDataStore(make_snapshot())
        report = SyncCoordinator(store).run("tariff_rules", lambda: load_category(sqlite_engine, "tariff_rules"))
        assert report.records == 2
        assert store.current().registry.find_base_duty("73181500", "US", AS_OF) is None

    def test_invalid_rows_rejected(self, sqlite_engine):
        session_factory = sessionmaker(bind=sqlite_engine)
        with session_factory() as session:
            session.add(TariffRules(goods_code="61X", origin_group="ERGA OMNES", duty_components=[],
                                    valid_from=START))
            session.commit()
        with pytest.raises(ReferenceDataIntegrityError):
            load_category(sqlite_engine, "tariff_rules")

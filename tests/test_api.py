# WORKFLOW: End-to-end API tests over in-memory reference data.
# Used by: CI/CD pipelines, development testing, quality assurance
# Test scenarios:
# 1. Health and readiness endpoints
# 2. Classification, tariff audit and tax endpoints
# 3. Error mapping (not found, missing VAT, validation)
# 4. Cotton T-shirt batch workflow from creation to confirmation
# 5. Reference-data sync endpoint
# 6. Declared unit price risk and customs outcome
#
# Testing flow: Override dependencies -> Execute requests -> Validate responses

from datetime import date
from decimal import Decimal

from fastapi.testclient import TestClient

from api.dependencies import get_batch_service, get_reference_db, get_sync_coordinator, get_tariff_engine
from api.main import app
from conftest import make_engine
from core.models import DeclarationRecord, DeclarationResult
from db.session import build_engine, init_db
from services.batch_reconciliation import BatchReconciliation
from services.reference_data import SyncCoordinator

PREFIX = "/api/v1"


def _money(value) -> Decimal:
    return Decimal(str(value))


class TestTariffApi:
    def setup_method(self):
        self.engine = make_engine()
        self.db_engine = build_engine("sqlite://")
        init_db(self.db_engine)
        self.service = BatchReconciliation(self.engine)
        self.coordinator = SyncCoordinator(self.engine.store)
        app.dependency_overrides[get_tariff_engine] = lambda: self.engine
        app.dependency_overrides[get_batch_service] = lambda: self.service
        app.dependency_overrides[get_sync_coordinator] = lambda: self.coordinator
        app.dependency_overrides[get_reference_db] = lambda: self.db_engine
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()
        self.db_engine.dispose()

    def test_health_endpoint(self):
        response = self.client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness(self):
        response = self.client.get(f"{PREFIX}/readyz")
        assert response.status_code == 200
        data = response.json()
        assert data["checks"] == {"database": True, "reference_data": True}
        assert data["snapshot_version"] == "test-1"

    def test_classify(self):
        response = self.client.post(f"{PREFIX}/classify", json={
            "product_description": "Cotton T-shirt",
            "origin_country_code": "US",
            "as_of": "2024-03-01",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["hs_code"] == "61091000"
        assert data["confidence"] == 90.0
        assert data["source"] == "Prefix"
        assert data["needs_review"] is False

    def test_classify_unclassified(self):
        response = self.client.post(f"{PREFIX}/classify", json={
            "product_description": "zzqx widget",
            "origin_country_code": "US",
        })
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "unclassified"

    def test_base_duty(self):
        response = self.client.post(f"{PREFIX}/tariff/base-duty", json={
            "hs_code": "7318.15.00", "origin_country_code": "CN", "as_of": "2024-03-01",
        })
        assert response.status_code == 200
        rule = response.json()["rule"]
        assert rule["origin_country_code"] == "CN"
        assert _money(rule["duty_rate"]) == Decimal("3.5")

    def test_base_duty_not_found(self):
        response = self.client.post(f"{PREFIX}/tariff/base-duty", json={
            "hs_code": "61091000", "origin_country_code": "US", "as_of": "2019-01-01",
        })
        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "not_found"
        assert detail["context"]["as_of"] == "2019-01-01"

    def test_measures(self):
        response = self.client.post(f"{PREFIX}/tariff/measures", json={
            "hs_code": "08051000", "origin_country_code": "ES", "as_of": "2024-03-01",
        })
        assert response.status_code == 200
        measures = response.json()["measures"]
        assert sorted(r["measure_id"] for r in measures["restrictions"]) == ["Q-0805", "SPS-0805"]

    def test_tax_compute(self):
        response = self.client.post(f"{PREFIX}/tax/compute", json={
            "hs_code": "61091000",
            "origin_country_code": "US",
            "destination_country_code": "DE",
            "as_of": "2024-03-01",
            "customs_value": "2750",
        })
        assert response.status_code == 200
        tax = response.json()["tax"]
        assert _money(tax["duty_amount"]) == Decimal("330.00")
        assert _money(tax["vat_amount"]) == Decimal("585.20")
        assert _money(tax["total_tax"]) == Decimal("915.20")

    def test_tax_missing_vat(self):
        response = self.client.post(f"{PREFIX}/tax/compute", json={
            "hs_code": "61091000",
            "origin_country_code": "US",
            "destination_country_code": "XX",
            "as_of": "2024-03-01",
            "customs_value": "100",
        })
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "missing_vat_rate"

    def test_tax_per_unit_without_quantity(self):
        response = self.client.post(f"{PREFIX}/tax/compute", json={
            "hs_code": "22042100",
            "origin_country_code": "FR",
            "destination_country_code": "DE",
            "as_of": "2024-03-01",
            "customs_value": "400",
        })
        assert response.status_code == 422

    def test_request_validation(self):
        response = self.client.post(f"{PREFIX}/tax/compute", json={
            "hs_code": "ABC",
            "origin_country_code": "US",
            "destination_country_code": "DE",
            "as_of": "2024-03-01",
            "customs_value": "-5",
        })
        assert response.status_code == 422

    def test_batch_workflow(self):
        response = self.client.post(f"{PREFIX}/batches", json={
            "destination_country_code": "DE", "import_date": "2024-03-01", "batch_id": "api-1",
        })
        assert response.status_code == 201

        for body in (
            {"product_description": "Cotton T-shirt", "origin_country_code": "US",
             "customs_value": "2750", "item_id": "shirt"},
            {"product_description": "Oranges", "origin_country_code": "ES",
             "customs_value": "500", "item_id": "oranges"},
            {"product_description": "zzqx widget", "origin_country_code": "US",
             "customs_value": "100", "item_id": "widget"},
        ):
            assert self.client.post(f"{PREFIX}/batches/api-1/items", json=body).status_code == 201

        batch = self.client.post(f"{PREFIX}/batches/api-1/process").json()
        statuses = {item["item_id"]: item["status"] for item in batch["items"]}
        assert statuses == {"shirt": "Approved", "oranges": "Reviewing", "widget": "Pending"}

        response = self.client.post(f"{PREFIX}/batches/api-1/confirm", json={"confirmed_by": "broker"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "confirmation_error"

        assert self.client.post(f"{PREFIX}/batches/api-1/items/oranges/approve").status_code == 200
        response = self.client.post(f"{PREFIX}/batches/api-1/items/widget/manual-code", json={"hs_code": "73181500"})
        assert response.status_code == 200
        assert response.json()["match_source"] == "Manual"

        response = self.client.post(f"{PREFIX}/batches/api-1/confirm", json={"confirmed_by": "broker"})
        assert response.status_code == 200
        batch = response.json()
        assert batch["confirmed"] is True
        assert _money(batch["total_tax"]) == Decimal("1128.80")

        response = self.client.post(f"{PREFIX}/batches/api-1/items", json={
            "product_description": "Oranges", "origin_country_code": "ES", "customs_value": "1",
        })
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "batch_locked"

    def test_batch_not_found(self):
        response = self.client.get(f"{PREFIX}/batches/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "batch_not_found"

    def test_invalid_transition(self):
        self.client.post(f"{PREFIX}/batches", json={
            "destination_country_code": "DE", "import_date": "2024-03-01", "batch_id": "api-2",
        })
        self.client.post(f"{PREFIX}/batches/api-2/items", json={
            "product_description": "Cotton T-shirt", "origin_country_code": "US",
            "customs_value": "10", "item_id": "shirt",
        })
        self.client.post(f"{PREFIX}/batches/api-2/process")
        response = self.client.post(f"{PREFIX}/batches/api-2/items/shirt/dispute")
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_transition"

    def test_declaration_risk(self):
        self.engine.declarations.record([
            DeclarationRecord(hs_code="61091000", origin_country_code="US", unit_price=Decimal(price),
                              result=DeclarationResult.PASSED, declared_on=date(2024, 1, 10))
            for price in ("25", "27", "28", "30", "32")
        ])
        response = self.client.post(f"{PREFIX}/tariff/declaration-risk", json={
            "hs_code": "6109.10.00", "origin_country_code": "US", "unit_price": "10",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["is_risky"] is True
        assert data["risk"]["risk_level"] == "high"
        assert _money(data["risk"]["suggested_min_price"]) == Decimal("25.00")
        assert data["risk"]["stats"]["pass_count"] == 5

    def test_declaration_result(self):
        self.client.post(f"{PREFIX}/batches", json={
            "destination_country_code": "DE", "import_date": "2024-03-01", "batch_id": "api-3",
        })
        self.client.post(f"{PREFIX}/batches/api-3/items", json={
            "product_description": "Cotton T-shirt", "origin_country_code": "US",
            "customs_value": "2750", "quantity": "100", "item_id": "shirt",
        })
        self.client.post(f"{PREFIX}/batches/api-3/process")
        response = self.client.post(f"{PREFIX}/batches/api-3/declaration-result", json={"result": "passed"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "batch_not_confirmed"

        assert self.client.post(f"{PREFIX}/batches/api-3/confirm").status_code == 200
        response = self.client.post(f"{PREFIX}/batches/api-3/declaration-result", json={"result": "passed"})
        assert response.status_code == 200
        assert response.json() == {"batch_id": "api-3", "result": "passed", "updated": 1}

        response = self.client.post(f"{PREFIX}/batches/api-3/declaration-result", json={"result": "pending"})
        assert response.status_code == 422

    def test_trade_terms(self):
        self.client.post(f"{PREFIX}/batches", json={
            "destination_country_code": "DE", "import_date": "2024-03-01", "batch_id": "api-3",
        })
        self.client.post(f"{PREFIX}/batches/api-3/items", json={
            "product_description": "Cotton T-shirt", "origin_country_code": "US", "customs_value": "1000",
        })
        self.client.post(f"{PREFIX}/batches/api-3/process")
        response = self.client.post(f"{PREFIX}/batches/api-3/trade-terms", json={
            "incoterm": "FOB", "international_freight": "100", "insurance_cost": "10",
        })
        assert response.status_code == 200
        batch = response.json()
        assert batch["incoterm"] == "FOB"
        assert _money(batch["total_customs_value"]) == Decimal("1110.00")

    def test_sync_from_empty_database(self):
        response = self.client.post(f"{PREFIX}/sync/trade_measures")
        assert response.status_code == 200
        assert response.json()["records"] == 0
        assert self.engine.snapshot.measures == ()

        status = self.client.get(f"{PREFIX}/sync/status").json()
        assert status["counts"]["trade_measures"] == 0
        assert status["running"] == []

    def test_sync_unknown_type(self):
        assert self.client.post(f"{PREFIX}/sync/vat").status_code == 404

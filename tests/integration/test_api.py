"""
Integration tests for the HTTP API.
"""
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from gigledger.messaging import topics
from gigledger.models.statement import LineType, PeriodType, StatementStatus
from gigledger.services.snapshots import SnapshotCalculator


GROSS_FARES = "Gross Uber rides fares"


@pytest.fixture
def headers(tenant_id) -> dict:
    return {"X-Tenant-ID": str(tenant_id)}


def upload_csv(client: TestClient, headers: dict, content: bytes, **form):
    data = {"provider": "Lyft", "period_type": "Monthly", "period_key": "2024-03"}
    data.update(form)
    return client.post(
        "/api/v1/statements",
        files={"file": ("lyft.csv", content, "text/csv")},
        data=data,
        headers=headers,
    )


class TestTenantHeader:
    """Tests for the tenant header."""

    def test_missing_header(self, client: TestClient):
        """Test requests without a tenant are rejected."""
        response = client.get("/api/v1/statements")

        assert response.status_code == 400
        assert response.json()["error_code"] == "GL-100"

    def test_malformed_header(self, client: TestClient):
        """Test the tenant must be a UUID."""
        response = client.get("/api/v1/statements", headers={"X-Tenant-ID": "acme"})

        assert response.status_code == 400


class TestStatementEndpoints:
    """Tests for /api/v1/statements."""

    def test_upload(self, client, headers, publisher, lyft_monthly_csv):
        """Test a statement upload is accepted and queued."""
        response = upload_csv(client, headers, lyft_monthly_csv)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "Submitted"
        assert data["provider"] == "Lyft"
        assert data["period_key"] == "2024-03"
        assert data["posted_to_ledger"] is True
        assert len(publisher.published(topics.STATEMENT_RECEIVED)) == 1

    def test_duplicate_upload(self, client, headers, lyft_monthly_csv):
        """Test a duplicate statement returns 409."""
        upload_csv(client, headers, lyft_monthly_csv)

        response = upload_csv(client, headers, lyft_monthly_csv)

        assert response.status_code == 409
        assert response.json()["error_code"] == "GL-102"
        assert response.json()["retryable"] is False

    def test_unsupported_provider(self, client, headers, lyft_monthly_csv):
        """Test an unknown provider returns 400."""
        response = upload_csv(client, headers, lyft_monthly_csv, provider="DoorDash")

        assert response.status_code == 400
        assert response.json()["error_code"] == "GL-104"

    def test_unsupported_file_type(self, client, headers):
        """Test an unreadable file type is rejected as bad input."""
        response = client.post(
            "/api/v1/statements",
            files={"file": ("report.zip", b"PK\x03\x04", "application/zip")},
            data={"provider": "Lyft", "period_type": "Monthly", "period_key": "2024-03"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["details"]["content_type"] == "application/zip"
        assert response.json()["retryable"] is False

    def test_list_and_get(self, client, headers, lyft_monthly_csv):
        """Test uploaded statements are listed and fetched by id."""
        statement_id = upload_csv(client, headers, lyft_monthly_csv).json()["statement_id"]

        listing = client.get("/api/v1/statements", params={"year": 2024}, headers=headers).json()
        assert listing["total"] == 1
        assert listing["items"][0]["id"] == statement_id
        assert listing["items"][0]["income_total"] == "0.00"

        detail = client.get(f"/api/v1/statements/{statement_id}", headers=headers)
        assert detail.status_code == 200
        assert detail.json()["lines"] == []

    def test_other_tenant_cannot_read(self, client, headers, lyft_monthly_csv):
        """Test statements are invisible to other tenants."""
        statement_id = upload_csv(client, headers, lyft_monthly_csv).json()["statement_id"]

        response = client.get(
            f"/api/v1/statements/{statement_id}", headers={"X-Tenant-ID": str(uuid.uuid4())}
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "GL-404"

    def test_submit_blocked(self, client, headers, make_statement):
        """Test submitting a reconciliation-only statement returns 409."""
        statement = make_statement(
            period_type=PeriodType.YEARLY, period_key="2024", status=StatementStatus.RECONCILIATION_ONLY
        )

        response = client.post(f"/api/v1/statements/{statement.id}/submit", headers=headers)

        assert response.status_code == 409
        assert response.json()["error_code"] == "GL-103"

    def test_submit_unknown(self, client, headers):
        """Test submitting a missing statement returns 404."""
        response = client.post(f"/api/v1/statements/{uuid.uuid4()}/submit", headers=headers)

        assert response.status_code == 404


class TestReceiptEndpoints:
    """Tests for /api/v1/receipts."""

    def test_upload(self, client, headers, publisher, store):
        """Test a receipt upload is accepted and queued."""
        response = client.post(
            "/api/v1/receipts",
            files={"file": ("fuel.png", b"\x89PNG fuel receipt", "image/png")},
            headers=headers,
        )

        assert response.status_code == 202
        assert response.json()["status"] == "Submitted"
        assert len(store.blobs) == 1
        assert len(publisher.published(topics.RECEIPT_RECEIVED)) == 1

    def test_resolve_held_receipt(self, client, headers, holding_pipeline):
        """Test a held receipt is released with reviewed fields, once."""
        receipt_id = client.post(
            "/api/v1/receipts",
            files={"file": ("fuel.png", b"\x89PNG fuel receipt", "image/png")},
            headers=headers,
        ).json()["receipt_id"]
        holding_pipeline()
        review = {"vendor": "Canadian Tire", "receipt_date": "2024-05-14", "total": "53.50", "tax": "3.50"}

        response = client.post(f"/api/v1/receipts/{receipt_id}/resolve", json=review, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ReadyForPosting"
        assert data["total"] == "53.50"
        assert data["receipt_date"] == "2024-05-14"

        again = client.post(f"/api/v1/receipts/{receipt_id}/resolve", json=review, headers=headers)
        assert again.status_code == 400
        assert again.json()["error_code"] == "GL-100"

    def test_resolve_unknown_receipt(self, client, headers):
        """Test resolving a missing receipt returns 404."""
        response = client.post(f"/api/v1/receipts/{uuid.uuid4()}/resolve", json={}, headers=headers)

        assert response.status_code == 404


class TestLedgerEndpoints:
    """Tests for /api/v1/ledger."""

    def manual(self, client, headers, amount="40.00", key="fuel-1"):
        return client.post(
            "/api/v1/ledger/manual",
            json={
                "entry_date": "2024-06-01",
                "idempotency_key": key,
                "lines": [{"line_type": "Expense", "amount": amount, "gst_hst": "2.00", "memo": "Fuel"}],
            },
            headers=headers,
        )

    def test_manual_entry(self, client, headers):
        """Test a manual entry is created and listed with string amounts."""
        response = self.manual(client, headers)

        assert response.status_code == 201
        entry_id = response.json()["ledger_entry_id"]

        entries = client.get("/api/v1/ledger", headers=headers).json()
        assert [e["id"] for e in entries] == [entry_id]
        assert entries[0]["source_type"] == "Manual"
        assert entries[0]["lines"][0]["amount"] == "40.00"
        assert entries[0]["lines"][0]["line_type"] == LineType.EXPENSE.value

    def test_manual_replay(self, client, headers):
        """Test replaying an idempotency key returns the same entry."""
        first = self.manual(client, headers).json()
        second = self.manual(client, headers).json()

        assert first == second

    def test_zero_amount(self, client, headers):
        """Test a zero-amount line is rejected."""
        response = self.manual(client, headers, amount="0")

        assert response.status_code == 400
        assert response.json()["error_code"] == "GL-100"

    def test_adjustment(self, client, headers):
        """Test a correction returns the reversal and corrected entries."""
        entry_id = self.manual(client, headers).json()["ledger_entry_id"]

        response = client.post(
            "/api/v1/ledger/adjustments",
            json={
                "reverse_entry_id": entry_id,
                "idempotency_key": "fix-1",
                "lines": [{"line_type": "Expense", "amount": "45.00"}],
            },
            headers=headers,
        )

        assert response.status_code == 201
        assert set(response.json()) == {"reversal_entry_id", "corrected_entry_id"}
        assert len(client.get("/api/v1/ledger", headers=headers).json()) == 3

    def test_date_filter(self, client, headers):
        """Test entries outside the range are excluded."""
        self.manual(client, headers)

        response = client.get("/api/v1/ledger", params={"start": "2024-07-01"}, headers=headers)

        assert response.json() == []


class TestReconciliationEndpoints:
    """Tests for /api/v1/reconciliation."""

    def test_missing_yearly(self, client, headers):
        """Test reconciling without a Yearly statement returns 400."""
        response = client.post("/api/v1/reconciliation/Uber/2024", headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "GL-101"

    def test_run(self, client, headers, make_statement):
        """Test a completed run is returned with its variances."""
        make_statement(period_key="2024-01", lines=[
            {"line_type": LineType.INCOME, "description": GROSS_FARES, "money_amount": Decimal("1000.00")},
        ])
        make_statement(period_type=PeriodType.YEARLY, period_key="2024", lines=[
            {"line_type": LineType.INCOME, "description": GROSS_FARES, "money_amount": Decimal("1100.00")},
        ])

        response = client.post("/api/v1/reconciliation/uber/2024", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "Completed"
        assert data["variance_amount"] == "-100.00"
        assert len(data["variances"]) == 7


class TestSnapshotEndpoints:
    """Tests for /api/v1/snapshots."""

    def test_invalid_key(self, client, headers):
        """Test a malformed period key returns 400."""
        response = client.get("/api/v1/snapshots/Monthly/2024-13", headers=headers)

        assert response.status_code == 400
        assert response.json()["details"]["period_key"] == "2024-13"

    def test_not_computed(self, client, headers):
        """Test a bucket with no snapshot returns 404."""
        response = client.get("/api/v1/snapshots/YTD/2024", headers=headers)

        assert response.status_code == 404

    def test_get_snapshot(self, client, headers, db_session, ctx):
        """Test a computed snapshot is returned."""
        SnapshotCalculator().compute(db_session, ctx, PeriodType.YTD, "2024")
        db_session.commit()

        response = client.get("/api/v1/snapshots/YTD/2024", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["authority_score"] == 0
        assert data["estimated_pct"] == "1.0000"
        assert {d["metric_key"] for d in data["details"]} == {
            "RevenueTotal", "ExpensesTotal", "TaxCollectedTotal", "ItcTotal", "NetTax",
        }

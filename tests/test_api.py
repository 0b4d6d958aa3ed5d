from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from csrf import generate_csrf_token
from database import Base
from main import app, get_db
from periods import local_now


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        session = TestingSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_bucket(client: TestClient, **overrides) -> dict:
    payload = {"name": "Groceries", "size": 400, "period": "monthly", **overrides}
    response = client.post("/buckets", json=payload)
    assert response.status_code == 201
    return response.json()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_bucket_crud(client: TestClient) -> None:
    bucket = _create_bucket(client, size="250.50")
    assert bucket["size"] == 250.5

    response = client.put(f"/buckets/{bucket['id']}", json={"name": "Food"})
    assert response.status_code == 200
    assert response.json()["name"] == "Food"
    assert response.json()["size"] == 250.5
    assert response.json()["period"] == "monthly"

    assert [b["id"] for b in client.get("/buckets").json()] == [bucket["id"]]

    assert client.delete(f"/buckets/{bucket['id']}").json() == {"success": True}
    assert client.get("/buckets").json() == []


def test_validation_errors_are_reported_per_field(client: TestClient) -> None:
    response = client.post("/buckets", json={"name": "", "size": -5, "period": "weekly"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert {"name", "size", "period"} <= set(body["errors"])


def test_unknown_ids_return_not_found(client: TestClient) -> None:
    response = client.get("/buckets/missing")
    assert response.status_code == 404
    assert response.json() == {"error": "Bucket not found", "code": "NOT_FOUND"}

    assert client.get("/transactions/missing").status_code == 404
    assert client.delete("/buckets/missing").status_code == 404


def test_assign_and_unassign_transaction(client: TestClient) -> None:
    bucket = _create_bucket(client)
    txn = client.post(
        "/transactions", json={"date": "2024-01-15", "description": "Market", "amount": 32}
    ).json()
    assert txn["bucket_id"] is None

    assigned = client.put(f"/transactions/{txn['id']}", json={"bucketId": bucket["id"]})
    assert assigned.status_code == 200
    assert assigned.json()["bucket"]["name"] == "Groceries"

    cleared = client.put(f"/transactions/{txn['id']}", json={"bucket_id": None})
    assert cleared.json()["bucket_id"] is None
    assert cleared.json()["bucket"] is None

    missing = client.put(f"/transactions/{txn['id']}", json={"bucket_id": "nope"})
    assert missing.status_code == 404
    assert client.put(f"/transactions/{txn['id']}", json={}).status_code == 400


def test_upload_statement(client: TestClient) -> None:
    content = "\ufeffDate,Description,Amount\n2024-01-15,Grocery Store,-50.00\n"
    response = client.post(
        "/upload-statement",
        files={"file": ("statement.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["transactions"][0]["amount"] == 50.0
    assert body["transactions"][0]["bucket_id"] is None
    assert len(client.get("/transactions").json()) == 1


def test_upload_statement_rejects_whole_file_on_bad_row(client: TestClient) -> None:
    content = "Date,Description,Amount\n2024-01-15,Fine,5\nsoon,Broken,5\n"
    response = client.post(
        "/upload-statement",
        files={"file": ("statement.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["count"] == 0
    assert body["errors"] == ["Invalid date: soon"]
    assert client.get("/transactions").json() == []


def test_upload_statement_requires_file(client: TestClient) -> None:
    response = client.post("/upload-statement")

    assert response.status_code == 400
    assert response.json()["code"] == "BAD_REQUEST"


def test_dashboard_counts_current_period_only(client: TestClient) -> None:
    bucket = _create_bucket(client, size=100)
    today = local_now().date()
    for txn_date, amount in ((today, 25), (date(today.year - 1, 1, 15), 60)):
        client.post(
            "/transactions",
            json={"date": txn_date.isoformat(), "amount": amount, "bucket_id": bucket["id"]},
        )

    [summary] = client.get("/dashboard").json()

    assert summary["id"] == bucket["id"]
    assert summary["total_spent"] == 25
    assert summary["percentage_full"] == 25
    assert summary["transaction_count"] == 1
    assert summary["status"] in {"good", "warning", "critical"}


def test_export_csv(client: TestClient) -> None:
    client.post("/transactions", json={"date": "2024-03-01", "description": "Rent", "amount": 900})

    response = client.get("/transactions/export.csv")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "transactions_all.csv" in response.headers["content-disposition"]
    assert response.text.splitlines() == ["Date,Description,Amount,Bucket", "2024-03-01,Rent,900.00,"]


def test_bad_period_filter_is_rejected(client: TestClient) -> None:
    response = client.get("/transactions", params={"period": "fortnight"})

    assert response.status_code == 400
    assert response.json()["code"] == "BAD_REQUEST"


def test_pages_render(client: TestClient) -> None:
    _create_bucket(client)
    for path in ("/", "/ui/buckets", "/ui/transactions", "/ui/upload"):
        response = client.get(path)
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]


def test_bucket_form_requires_csrf(client: TestClient) -> None:
    form = {"name": "Rent", "size": "1200", "period": "monthly"}

    rejected = client.post("/ui/buckets", data={**form, "csrf_token": "forged"})
    assert rejected.status_code == 400

    accepted = client.post(
        "/ui/buckets",
        data={**form, "csrf_token": generate_csrf_token()},
        follow_redirects=False,
    )
    assert accepted.status_code == 303
    assert [b["name"] for b in client.get("/buckets").json()] == ["Rent"]


def test_upload_preview_page_lists_rows_without_saving(client: TestClient) -> None:
    content = "Date,Description,Amount\n2024-01-15,Bakery,7.20\n"
    response = client.post(
        "/ui/upload/preview",
        data={"csrf_token": generate_csrf_token()},
        files={"file": ("statement.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 200
    assert "Bakery" in response.text
    assert "7.20" in response.text
    assert client.get("/transactions").json() == []


def test_infinite_bucket_size_is_rejected(client: TestClient) -> None:
    response = client.post("/buckets", json={"name": "X", "size": "inf", "period": "monthly"})

    assert response.status_code == 400
    assert "size" in response.json()["errors"]
    assert client.get("/buckets").json() == []


def test_upload_preview_with_bad_rows_does_not_claim_an_import(client: TestClient) -> None:
    content = "Date,Description,Amount\nsoon,Broken,5\n"
    response = client.post(
        "/ui/upload/preview",
        data={"csrf_token": generate_csrf_token()},
        files={"file": ("statement.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 200
    assert "Invalid date: soon" in response.text
    assert "Problems found" in response.text
    assert "Import rejected" not in response.text


def test_upload_statement_over_size_limit_is_rejected(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr("main.get_settings", lambda: SimpleNamespace(max_upload_bytes=32))
    content = "Date,Description,Amount\n" + "2024-01-15,Coffee,4.50\n" * 10
    response = client.post(
        "/upload-statement",
        files={"file": ("statement.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Statement file too large", "code": "BAD_REQUEST"}
    assert client.get("/transactions").json() == []

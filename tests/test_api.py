import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db, scheduler_manager

LEDGER_CSV = (
    b"description,amount,kind,date\n"
    b"Salary,1000.00,income,2025-01-05\n"
    b"Rent,500.00,needs,2025-01-05\n"
)


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
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_import_review_and_commit_flow(client: TestClient) -> None:
    resp = client.post(
        "/api/transactions/import",
        files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["stats"] == {
        "total": 2,
        "valid": 2,
        "created": 2,
        "duplicates": 0,
        "errors": 0,
    }
    ids = body["created_ids"]

    pending = client.get("/api/pending-transactions").json()["items"]
    assert {item["id"] for item in pending} == set(ids)
    assert all(item["expired"] is False for item in pending)
    assert {item["amount"] for item in pending} == {"1000.00", "500.00"}

    resp = client.post(f"/api/pending-transactions/{ids[0]}/commit", json={"ids": ids})
    assert resp.status_code == 200
    assert resp.json()["committed"] == 2

    summary = client.get("/api/summary", params={"month": "2025-01"}).json()
    assert summary["income"] == "1000.00"
    assert summary["needs"] == "500.00"
    assert summary["closing_balance"] == "500.00"

    listed = client.get("/api/transactions", params={"month": "2025-01"}).json()
    assert len(listed["items"]) == 2


def test_reimport_flags_duplicates(client: TestClient) -> None:
    first = client.post(
        "/api/transactions/import",
        files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")},
    ).json()
    client.post(f"/api/pending-transactions/{first['created_ids'][0]}/commit")

    again = client.post(
        "/api/transactions/import",
        files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")},
    ).json()
    assert again["stats"]["duplicates"] == 1


def test_commit_status_codes(client: TestClient) -> None:
    resp = client.post("/api/pending-transactions/9999/commit")
    assert resp.status_code == 404
    assert resp.json()["results"][0]["error"] == "Pending transaction not found"

    resp = client.post(
        "/api/pending-transactions/9999/commit", json={"ids": [9998, 9999]}
    )
    assert resp.status_code == 400
    assert resp.json()["failed"] == 2

    resp = client.post("/api/pending-transactions/9999/commit", json={"ids": []})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid IDs array"


def test_empty_id_list_does_not_commit_path_row(client: TestClient) -> None:
    ids = client.post(
        "/api/transactions/import",
        files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")},
    ).json()["created_ids"]

    resp = client.post(f"/api/pending-transactions/{ids[0]}/commit", json={"ids": []})
    assert resp.status_code == 400
    assert len(client.get("/api/pending-transactions").json()["items"]) == 2


def test_import_rejections(client: TestClient) -> None:
    resp = client.post(
        "/api/transactions/import",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/transactions/import",
        files={"file": ("bad.json", b'[{"description": "x"}]', "application/json")},
    )
    assert resp.status_code == 400
    assert resp.json()["errors"][0].startswith("Row 1: Missing required fields")

    resp = client.post(
        "/api/transactions/import",
        files={"file": ("empty.csv", b"", "text/csv")},
    )
    assert resp.status_code == 400

    oversized = (
        b'description,amount,kind,date\n"' + b"x" * 200_000 + b'",1,needs,2025-01-05\n'
    )
    resp = client.post(
        "/api/transactions/import",
        files={"file": ("big.csv", oversized, "text/csv")},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Failed to parse file")


def test_transaction_crud_and_errors(client: TestClient) -> None:
    category = client.post(
        "/api/categories", json={"name": "Rent", "type": "needs"}
    ).json()

    resp = client.post(
        "/api/transactions",
        json={
            "description": "Rent",
            "amount_minor": 50000,
            "date": "2025-01-05",
            "type": "income",
            "category_id": category["id"],
        },
    )
    assert resp.status_code == 400

    created = client.post(
        "/api/transactions",
        json={
            "description": "Rent",
            "amount_minor": 50000,
            "date": "2025-01-05",
            "type": "needs",
            "category_id": category["id"],
        },
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]

    resp = client.put(f"/api/transactions/{txn_id}", json={"amount_minor": 45000})
    assert resp.status_code == 200
    assert resp.json()["amount"] == "450.00"

    summary = client.get("/api/summary", params={"month": "2025-01"}).json()
    assert summary["needs"] == "450.00"

    assert client.delete(f"/api/transactions/{txn_id}").status_code == 204
    assert client.delete(f"/api/transactions/{txn_id}").status_code == 404
    assert client.get("/api/summary", params={"month": "2025-13"}).status_code == 400


def test_pending_edit_and_reject(client: TestClient) -> None:
    ids = client.post(
        "/api/transactions/import",
        files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")},
    ).json()["created_ids"]

    resp = client.put(f"/api/pending-transactions/{ids[1]}", json={"amount": "450.5"})
    assert resp.status_code == 200
    assert resp.json()["amount"] == "450.50"

    resp = client.put(f"/api/pending-transactions/{ids[1]}", json={"kind": "bogus"})
    assert resp.status_code == 400

    assert client.delete(f"/api/pending-transactions/{ids[1]}").status_code == 204
    assert client.delete(f"/api/pending-transactions/{ids[1]}").status_code == 404


def test_scheduler_is_disabled_by_default() -> None:
    assert scheduler_manager.enabled is False
    scheduler_manager.start()
    assert not scheduler_manager.scheduler.running

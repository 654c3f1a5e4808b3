import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from database import Base
from main import app, get_db
from models import User


class CommitFailingSession(Session):
    def commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))


def _session_override(factory):
    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    return override_get_db


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def client(db_engine):
    TestingSession = sessionmaker(
        bind=db_engine, autoflush=False, expire_on_commit=False
    )
    app.dependency_overrides[get_db] = _session_override(TestingSession)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload_dir_contents() -> list:
    upload_dir = get_settings().upload_dir
    if not upload_dir.exists():
        return []
    return sorted(p.name for p in upload_dir.iterdir())


def _signup(client: TestClient, email: str = "alice@example.com") -> dict:
    res = client.post(
        "/api/auth/register",
        json={"name": "Alice", "email": email, "password": "hunter22"},
    )
    assert res.status_code == 201, res.text
    return {"Authorization": f"Bearer {res.json()['token']}"}


def _create(client: TestClient, headers: dict, **fields) -> dict:
    data = {
        "description": "Groceries",
        "amount": "45.50",
        "type": "expense",
        "date": "2024-01-05",
        "category": "Food",
    }
    data.update(fields)
    res = client.post("/api/transactions", data=data, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def test_health(client) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "OK"


def test_register_login_refresh_and_me(client) -> None:
    res = client.post(
        "/api/auth/register",
        json={"name": "Alice", "email": "Alice@Example.com", "password": "hunter22"},
    )
    assert res.status_code == 201
    body = res.json()
    assert body["user"]["email"] == "alice@example.com"
    assert body["token"]
    assert body["expires_in"] == 24 * 3600

    dup = client.post(
        "/api/auth/register",
        json={"name": "Other", "email": "alice@example.com", "password": "hunter22"},
    )
    assert dup.status_code == 400

    bad = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "nope-nope"}
    )
    assert bad.status_code == 401

    login = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "hunter22"}
    )
    assert login.status_code == 200
    token = login.json()["token"]

    refreshed = client.post(
        "/api/auth/refresh", headers={"Authorization": f"Bearer {token}"}
    )
    assert refreshed.status_code == 200
    new_token = refreshed.json()["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {new_token}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Alice"


def test_register_requires_all_fields(client) -> None:
    res = client.post("/api/auth/register", json={"email": "a@example.com"})
    assert res.status_code == 400
    assert "All fields are required" in res.json()["detail"]


def test_refresh_without_header_is_unauthorized(client) -> None:
    assert client.post("/api/auth/refresh").status_code == 401


def test_transactions_require_token(client) -> None:
    res = client.get("/api/transactions")
    assert res.status_code == 401
    assert res.headers["www-authenticate"] == "Bearer"

    res = client.get(
        "/api/transactions", headers={"Authorization": "Bearer not-a-token"}
    )
    assert res.status_code == 401


def test_form_create_applies_type_toggle(client) -> None:
    headers = _signup(client)

    expense = _create(client, headers, date="2024-01-05T10:00:00.000Z")
    income = _create(
        client, headers, description="Salary", amount="1000", type="income",
        category="Salary",
    )

    assert expense["amount"] == -45.5
    assert expense["amount_cents"] == -4550
    assert expense["kind"] == "expense"
    assert expense["date"] == "2024-01-05"
    assert expense["is_recurring"] is False
    assert expense["repeat_interval"] is None
    assert income["amount"] == 1000.0
    assert income["kind"] == "income"


def test_create_rejects_incomplete_or_invalid_payloads(client) -> None:
    headers = _signup(client)

    missing = client.post(
        "/api/transactions",
        data={"description": "x", "amount": "1", "date": "2024-01-01"},
        headers=headers,
    )
    assert missing.status_code == 400
    assert "category" in missing.json()["detail"]

    bad_amount = client.post(
        "/api/transactions",
        data={"description": "x", "amount": "abc", "date": "2024-01-01", "category": "A"},
        headers=headers,
    )
    assert bad_amount.status_code == 400

    recurring = client.post(
        "/api/transactions",
        json={
            "description": "Gym",
            "amount": -20,
            "date": "2024-01-01",
            "category": "Gym",
            "isRecurring": True,
        },
        headers=headers,
    )
    assert recurring.status_code == 400
    assert client.get("/api/transactions", headers=headers).json() == []


def test_recurring_template_reports_next_occurrence(client) -> None:
    headers = _signup(client)
    res = client.post(
        "/api/transactions",
        json={
            "description": "Gym",
            "amount": -20,
            "date": "2024-01-01",
            "category": "Gym",
            "isRecurring": True,
            "repeatInterval": "weekly",
        },
        headers=headers,
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["is_recurring"] is True
    assert body["repeat_interval"] == "weekly"
    assert body["next_occurrence"] is not None


def test_list_get_update_delete(client) -> None:
    headers = _signup(client)
    old = _create(client, headers, description="Old", date="2024-01-01")
    new = _create(client, headers, description="New", date="2024-02-01")

    listed = client.get("/api/transactions", headers=headers).json()
    assert [t["description"] for t in listed] == ["New", "Old"]

    filtered = client.get(
        "/api/transactions", params={"start": "2024-01-15"}, headers=headers
    ).json()
    assert [t["id"] for t in filtered] == [new["id"]]

    fetched = client.get(f"/api/transactions/{old['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["description"] == "Old"

    updated = client.put(
        f"/api/transactions/{old['id']}",
        json={"amount": 60, "type": "expense", "category": "Dining"},
        headers=headers,
    )
    assert updated.status_code == 200, updated.text
    body = updated.json()
    assert body["amount"] == -60.0
    assert body["category"] == "Dining"
    assert body["description"] == "Old"

    deleted = client.delete(f"/api/transactions/{old['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Deleted"}
    remaining = client.get("/api/transactions", headers=headers).json()
    assert [t["id"] for t in remaining] == [new["id"]]
    assert (
        client.get(f"/api/transactions/{old['id']}", headers=headers).status_code == 404
    )


def test_update_with_invalid_interval_is_rejected(client) -> None:
    headers = _signup(client)
    txn = _create(client, headers)
    res = client.put(
        f"/api/transactions/{txn['id']}",
        json={"isRecurring": True, "repeatInterval": "daily"},
        headers=headers,
    )
    assert res.status_code == 400


def test_other_users_records_look_missing(client) -> None:
    alice = _signup(client, "alice@example.com")
    bob = _signup(client, "bob@example.com")
    txn = _create(client, alice)

    assert client.get("/api/transactions", headers=bob).json() == []
    assert client.get(f"/api/transactions/{txn['id']}", headers=bob).status_code == 404
    assert (
        client.put(
            f"/api/transactions/{txn['id']}", json={"category": "X"}, headers=bob
        ).status_code
        == 404
    )
    assert client.delete(f"/api/transactions/{txn['id']}", headers=bob).status_code == 404

    still = client.get(f"/api/transactions/{txn['id']}", headers=alice).json()
    assert still["category"] == "Food"


def test_multipart_upload_sets_attachment(client) -> None:
    headers = _signup(client)
    res = client.post(
        "/api/transactions",
        data={
            "description": "Printer",
            "amount": "120",
            "type": "expense",
            "date": "2024-01-05",
            "category": "Office",
        },
        files={"file": ("my receipt.pdf", b"%PDF-1.4 test", "application/pdf")},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    body = res.json()
    ref = body["attachment_ref"]
    assert ref.endswith("_my_receipt.pdf")
    assert body["attachment_url"] == f"/api/transactions/files/{ref}"
    assert (get_settings().upload_dir / ref).read_bytes() == b"%PDF-1.4 test"

    served = client.get(body["attachment_url"])
    assert served.status_code == 200
    assert served.content == b"%PDF-1.4 test"
    assert client.get("/api/transactions/files/missing.pdf").status_code == 404


def test_rejected_multipart_create_leaves_no_file(client) -> None:
    headers = _signup(client)
    res = client.post(
        "/api/transactions",
        data={
            "description": "Gym",
            "amount": "20",
            "type": "expense",
            "date": "2024-01-01",
            "category": "Gym",
            "isRecurring": "true",
        },
        files={"file": ("r.pdf", b"%PDF-1.4", "application/pdf")},
        headers=headers,
    )
    assert res.status_code == 400
    assert _upload_dir_contents() == []


def test_rejected_multipart_update_leaves_no_file(client) -> None:
    headers = _signup(client)
    txn = _create(client, headers)
    res = client.put(
        f"/api/transactions/{txn['id']}",
        data={"category": " "},
        files={"file": ("r.pdf", b"%PDF-1.4", "application/pdf")},
        headers=headers,
    )
    assert res.status_code == 400
    assert _upload_dir_contents() == []
    assert client.get(
        f"/api/transactions/{txn['id']}", headers=headers
    ).json()["attachment_ref"] is None


@pytest.mark.parametrize("amount", ["1e20", "-99999999999", "1e999999"])
def test_out_of_range_amount_is_rejected(client, amount) -> None:
    headers = _signup(client)
    res = client.post(
        "/api/transactions",
        data={"description": "x", "amount": amount, "date": "2024-01-01", "category": "A"},
        headers=headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Amount out of range"


def test_commit_failure_returns_internal_error(client, db_engine, monkeypatch) -> None:
    headers = _signup(client)
    failing = sessionmaker(
        bind=db_engine,
        class_=CommitFailingSession,
        autoflush=False,
        expire_on_commit=False,
    )
    app.dependency_overrides[get_db] = _session_override(failing)
    payload = {
        "description": "Groceries",
        "amount": "12",
        "type": "expense",
        "date": "2024-01-05",
        "category": "Food",
    }

    res = client.post("/api/transactions", data=payload, headers=headers)
    assert res.status_code == 500
    assert res.json() == {
        "detail": "Internal server error",
        "error": "Failed to add transaction",
    }

    monkeypatch.setenv("FINTRACK_ENV", "production")
    get_settings.cache_clear()
    res = client.post("/api/transactions", data=payload, headers=headers)
    assert res.status_code == 500
    assert res.json() == {"detail": "Internal server error"}


def test_token_for_deleted_user_is_unauthorized(client, db_engine) -> None:
    headers = _signup(client)
    with Session(db_engine) as session:
        session.query(User).delete()
        session.commit()

    res = client.get("/api/transactions", headers=headers)
    assert res.status_code == 401
    create = client.post(
        "/api/transactions",
        data={"description": "x", "amount": "1", "date": "2024-01-01", "category": "A"},
        headers=headers,
    )
    assert create.status_code == 401


def test_categories_and_dashboard(client) -> None:
    headers = _signup(client)
    _create(
        client, headers, description="Salary", amount="1000", type="income",
        category="Salary", date="2024-01-01",
    )
    _create(client, headers, description="Groceries", amount="200", date="2024-01-02")
    _create(client, headers, description="Lunch", amount="50", date="2024-01-03")

    categories = client.get("/api/transactions/categories", headers=headers).json()
    assert categories == ["Food", "Salary"]

    res = client.get("/api/dashboard", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["totals"] == {"income": 1000.0, "expenses": -250.0, "balance": 750.0}
    assert body["categories"] == [
        {"category": "Food", "amount": 250.0, "count": 2, "percentage": 100.0}
    ]
    assert body["savings_rate"] == pytest.approx(75.0)
    assert body["health"] == {"score": 90, "level": "Excellent"}
    assert [p["balance"] for p in body["trend"]] == [1000.0, 800.0, 750.0]
    assert body["top"][0]["description"] == "Salary"

    limited = client.get("/api/dashboard", params={"top": 1}, headers=headers).json()
    assert len(limited["top"]) == 1
    assert client.get(
        "/api/dashboard", params={"top": "many"}, headers=headers
    ).status_code == 400

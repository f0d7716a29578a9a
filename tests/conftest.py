from __future__ import annotations

from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from driving_school.config import Settings, get_settings
from driving_school.database import Base, get_db
from driving_school.events import get_event_publisher
from driving_school.exceptions import PaymentProviderError
from driving_school.flutterwave import ProviderTransaction, get_payment_provider
from driving_school.main import app
from driving_school.models import Payment, PaymentStatus, Role, Student, StudentStatus, User
from driving_school.security import get_password_hash

PASSWORD = "Secret123!"
PASSWORD_HASH = get_password_hash(PASSWORD)

TEST_SETTINGS = Settings(
    database_url="sqlite://",
    jwt_secret="test-access-secret",
    jwt_refresh_secret="test-refresh-secret",
    flutterwave_secret_key="FLWSECK_TEST-123",
    flutterwave_secret_hash="webhook-secret-hash",
    app_url="http://api.test",
    frontend_url="http://frontend.test",
)


class FakeProvider:
    """Stands in for the Flutterwave client; transactions are registered per test."""

    def __init__(self) -> None:
        self.transactions: dict[str, ProviderTransaction] = {}
        self.link_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.link_requests = []
        self.verify_calls: list[str] = []

    def add_transaction(self, tx_ref: str, status: str, transaction_id: str = "4975363", flw_ref: str = "FLW-MOCK-1"):
        tx = ProviderTransaction(id=transaction_id, tx_ref=tx_ref, status=status, flw_ref=flw_ref)
        self.transactions[transaction_id] = tx
        return tx

    def create_payment_link(self, request):
        self.link_requests.append(request)
        if self.link_error:
            raise self.link_error
        return f"https://checkout.flutterwave.test/pay/{request.reference}"

    def verify_transaction(self, transaction_id: str) -> ProviderTransaction:
        self.verify_calls.append(transaction_id)
        if self.verify_error:
            raise self.verify_error
        if transaction_id not in self.transactions:
            raise PaymentProviderError("Flutterwave API error: No transaction was found for this id")
        return self.transactions[transaction_id]

    def verify_transaction_by_reference(self, tx_ref: str) -> Optional[ProviderTransaction]:
        if self.verify_error:
            raise self.verify_error
        for tx in self.transactions.values():
            if tx.tx_ref == tx_ref:
                return tx
        return None

    def close(self) -> None:
        pass


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def publish(self, routing_key: str, event: dict) -> bool:
        self.events.append((routing_key, event))
        return True


@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def client(session_factory, provider, publisher):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email: str, role: Role = Role.STAFF, is_active: bool = True) -> User:
    user = User(email=email, password_hash=PASSWORD_HASH, role=role, is_active=is_active, session_generation=0)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_student(db, code: str = "MDS24AB12", status: StudentStatus = StudentStatus.ACTIVE, **fields) -> Student:
    student = Student(
        student_code=code,
        first_name=fields.pop("first_name", "Ada"),
        last_name=fields.pop("last_name", "Obi"),
        phone=fields.pop("phone", "08030000000"),
        status=status,
        **fields,
    )
    db.add(student)
    db.commit()
    db.refresh(student)
    return student


def make_payment(db, student: Student, reference: str = "MDS-LZ1ABC-XY12ZQ", amount: str = "5000.00") -> Payment:
    payment = Payment(
        student_id=student.id,
        amount=Decimal(amount),
        currency="NGN",
        status=PaymentStatus.PENDING,
        reference=reference,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def login(client, email: str, password: str = PASSWORD) -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.fixture
def admin(db) -> User:
    return make_user(db, "admin@marvel-driving.com", Role.ADMIN)


@pytest.fixture
def staff(db) -> User:
    return make_user(db, "staff@marvel-driving.com", Role.STAFF)


@pytest.fixture
def student(db) -> Student:
    return make_student(db)


@pytest.fixture
def admin_token(client, admin) -> str:
    return login(client, admin.email)["accessToken"]


@pytest.fixture
def staff_token(client, staff) -> str:
    return login(client, staff.email)["accessToken"]


@pytest.fixture
def viewer_token(client, student) -> str:
    response = client.post("/api/auth/viewer-login", json={"studentCode": student.student_code})
    assert response.status_code == 200, response.text
    return response.json()["data"]["accessToken"]

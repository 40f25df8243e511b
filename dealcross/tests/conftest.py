import os

# settings are read on first import of the app; the module-level engine is never used by tests
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

# FORCE model registration
import dealcross.models  # noqa: F401,E402

from dealcross.db.base import Base  # noqa: E402
from dealcross.db.session import get_db  # noqa: E402
from dealcross.models.enums import AdminPermission, AdminRole, Tier, UserRole  # noqa: E402
from dealcross.models.user import User  # noqa: E402
from dealcross.services.auth_service import issue_token, principal_for  # noqa: E402
from dealcross.services.escrow_service import EscrowService  # noqa: E402
from dealcross.services.fee_schedule_service import FeeScheduleService  # noqa: E402
from dealcross.services.notification_service import RecordingNotifier, get_notifier  # noqa: E402


@pytest.fixture()
def engine(tmp_path):
    # file-backed so two sessions really are two connections
    eng = create_engine(
        f"sqlite:///{tmp_path / 'dealcross.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    FeeScheduleService().seed_defaults(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def escrows(notifier):
    return EscrowService(notifier=notifier)


# ─────────────────────────────────────────────
# Users
# ─────────────────────────────────────────────

def add_user(db, name, email, *, tier=Tier.growth.value, role=UserRole.user, admin_role=None, permissions=None, password_hash="!"):
    user = User(
        name=name,
        email=email,
        password_hash=password_hash,
        tier=tier,
        role=role.value,
        admin_role=admin_role.value if admin_role else None,
        permissions=list(permissions or []),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def buyer(db):
    return add_user(db, "Ada Buyer", "buyer@example.com")


@pytest.fixture()
def seller(db):
    return add_user(db, "Sam Seller", "seller@example.com")


@pytest.fixture()
def outsider(db):
    return add_user(db, "Olu Outsider", "outsider@example.com")


@pytest.fixture()
def master(db):
    return add_user(
        db, "Master", "master@example.com",
        role=UserRole.admin, admin_role=AdminRole.master,
    )


@pytest.fixture()
def arbitrator(db):
    return add_user(
        db, "Arbiter", "arbiter@example.com",
        role=UserRole.admin, admin_role=AdminRole.admin,
        permissions=[AdminPermission.manage_disputes.value],
    )


@pytest.fixture()
def fee_admin(db):
    return add_user(
        db, "Fee Admin", "fees@example.com",
        role=UserRole.admin, admin_role=AdminRole.admin,
        permissions=[AdminPermission.manage_fees.value],
    )


def p(user):
    return principal_for(user)


def auth(user):
    return {"Authorization": f"Bearer {issue_token(principal_for(user))}"}


# ─────────────────────────────────────────────
# Escrows
# ─────────────────────────────────────────────

def create_payload(seller, **overrides):
    payload = {
        "title": "Vintage camera",
        "description": "Leica M3 with original case",
        "seller_email": seller.email,
        "amount": Decimal("1000"),
        "currency": "USD",
    }
    payload.update(overrides)
    return payload


def new_escrow(svc, db, buyer, seller, **overrides):
    return svc.create_escrow(db, buyer=p(buyer), payload=create_payload(seller, **overrides))


def drive_to(svc, db, escrow, buyer, seller, status):
    """Walk an escrow along the happy path until it reaches `status`."""
    steps = [
        ("accepted", lambda e: svc.accept(db, escrow=e, principal=p(seller))),
        ("funded", lambda e: svc.fund(db, escrow=e, principal=p(buyer))),
        ("in_progress", lambda e: svc.start(db, escrow=e, principal=p(seller))),
        ("inspection_pending", lambda e: svc.deliver(db, escrow=e, principal=p(seller), tracking_number="TRK1")),
        ("inspection_passed", lambda e: svc.pass_inspection(db, escrow=e, principal=p(buyer))),
    ]
    order = [target for target, _ in steps]
    done = order.index(escrow.status) + 1 if escrow.status in order else 0
    for target, step in steps[done:]:
        if escrow.status == status:
            return escrow
        escrow = step(escrow)
        assert escrow.status == target
    assert escrow.status == status
    return escrow


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────

@pytest.fixture()
def app(session_factory, db, notifier):
    from dealcross.main import create_app

    app = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    return app


@pytest.fixture()
def client(app):
    return TestClient(app)

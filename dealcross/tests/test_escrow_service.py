from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import add_user, create_payload, drive_to, new_escrow, p

from dealcross.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from dealcross.core.timeutil import as_utc, utcnow
from dealcross.models.audit_log import AuditLogRecord
from dealcross.models.enums import AdminPermission, AdminRole, UserRole
from dealcross.models.escrow import EscrowTimelineEntry
from dealcross.services.fee_schedule_service import FeeScheduleService


def _actions(db, escrow):
    rows = db.execute(
        select(EscrowTimelineEntry)
        .where(EscrowTimelineEntry.escrow_pk == escrow.id)
        .order_by(EscrowTimelineEntry.seq)
    ).scalars().all()
    return [r.action for r in rows]


# ─────────────────────────────────────────────
# create
# ─────────────────────────────────────────────

def test_create_snapshots_parties_and_starts_pending(db, escrows, buyer, seller, notifier):
    escrow = new_escrow(escrows, db, buyer, seller, seller_email="  SELLER@Example.com ")

    assert escrow.escrow_id.startswith("ESC")
    assert escrow.status == "pending"
    assert escrow.seller_id == seller.id
    assert escrow.buyer_tier == "growth"
    assert escrow.currency_type == "fiat"
    assert escrow.inspection_period_days == 3
    assert as_utc(escrow.expires_at) > utcnow() + timedelta(days=29)
    assert escrow.version == 1
    assert _actions(db, escrow) == ["create"]
    assert (str(seller.id), "escrow_created", {"escrow_id": escrow.escrow_id}) in notifier.sent


def test_create_with_milestones(db, escrows, buyer, seller):
    escrow = new_escrow(
        escrows, db, buyer, seller,
        milestones=[
            {"description": "Design", "amount": Decimal("400")},
            {"description": "Build", "amount": Decimal("600")},
        ],
    )
    assert [m.position for m in escrow.milestones] == [0, 1]
    assert sum(m.amount for m in escrow.milestones) == Decimal("1000")


def test_crypto_escrow(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller, currency="usdt", amount=Decimal("250.5"))
    assert escrow.currency == "USDT"
    assert escrow.currency_type == "crypto"


def test_other_seeded_fiat_currency(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller, currency="EUR", amount=Decimal("920"))
    assert escrow.currency == "EUR"
    assert escrow.currency_type == "fiat"


@pytest.mark.parametrize(
    "overrides",
    [
        {"seller_email": "nobody@example.com"},
        {"seller_email": "buyer@example.com"},
        {"currency": "XYZ"},
        {"amount": Decimal("0")},
        {"amount": Decimal("10.001")},
        {"title": "  "},
        {"category": "spaceships"},
        {"milestones": [{"description": "Half", "amount": Decimal("500")}]},
        {"currency": "BTC"},
        {
            "amount": Decimal("10.00"),
            "milestones": [
                {"description": "Part one", "amount": Decimal("5.004")},
                {"description": "Part two", "amount": Decimal("4.996")},
            ],
        },
        {"amount": Decimal("6000")},
    ],
)
def test_create_validation(db, escrows, buyer, seller, overrides):
    with pytest.raises(ValidationError):
        new_escrow(escrows, db, buyer, seller, **overrides)


# ─────────────────────────────────────────────
# happy path
# ─────────────────────────────────────────────

def test_full_lifecycle_pays_out_on_confirm(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller)
    escrow = drive_to(escrows, db, escrow, buyer, seller, "funded")

    # growth USD: 1.5% each side
    assert escrow.buyer_fee_rate == Decimal("0.015")
    assert escrow.buyer_fee == Decimal("15")
    assert escrow.seller_fee == Decimal("15")
    assert escrow.buyer_pays == Decimal("1015")
    assert escrow.net_payout == Decimal("985")
    assert escrow.funded_at is not None

    escrow = drive_to(escrows, db, escrow, buyer, seller, "inspection_passed")
    assert escrow.tracking_number == "TRK1"
    assert escrow.delivered_at is not None
    assert escrow.inspection_expires_at is not None

    escrow = escrows.confirm(db, escrow=escrow, principal=p(buyer))
    assert escrow.status == "paid_out"
    assert escrow.completed_at is not None
    assert escrow.paid_out_at is not None
    assert escrow.net_payout == Decimal("985")

    assert _actions(db, escrow) == [
        "create", "accept", "fund", "start", "deliver", "begin_inspection", "pass", "confirm", "payout",
    ]
    transitions = db.execute(
        select(AuditLogRecord).where(AuditLogRecord.action == "ESCROW_TRANSITION")
    ).scalars().all()
    assert len(transitions) == 8


def test_confirm_without_auto_payout(db, escrows, buyer, seller, monkeypatch):
    from dealcross.core.config import get_settings

    monkeypatch.setattr(get_settings(), "auto_payout_on_confirm", False)
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_passed")

    escrow = escrows.confirm(db, escrow=escrow, principal=p(buyer))
    assert escrow.status == "completed"

    escrow = escrows.payout(db, escrow=escrow)
    assert escrow.status == "paid_out"


def test_confirm_twice_fails(db, escrows, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_passed")
    escrow = escrows.confirm(db, escrow=escrow, principal=p(buyer))

    with pytest.raises(InvalidTransitionError):
        escrows.confirm(db, escrow=escrow, principal=p(buyer))
    db.refresh(escrow)
    assert escrow.status == "paid_out"


def test_payout_uses_rates_locked_at_funding(db, escrows, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    FeeScheduleService().update_fee(
        db, tier="growth", currency="USD", field="seller_fee_rate", new_value=Decimal("0.05"), actor="a"
    )

    escrow = drive_to(escrows, db, escrow, buyer, seller, "inspection_passed")
    escrow = escrows.confirm(db, escrow=escrow, principal=p(buyer))
    assert escrow.seller_fee == Decimal("15")
    assert escrow.net_payout == Decimal("985")


def test_failed_inspection_then_dispute_is_the_only_way_out(db, escrows, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_pending")
    escrow = escrows.fail_inspection(db, escrow=escrow, principal=p(buyer), note="cracked lens")
    assert escrow.status == "inspection_failed"

    with pytest.raises(InvalidTransitionError):
        escrows.confirm(db, escrow=escrow, principal=p(buyer))


# ─────────────────────────────────────────────
# rejections
# ─────────────────────────────────────────────

def test_invalid_action_leaves_status_unchanged(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller)
    with pytest.raises(InvalidTransitionError):
        escrows.fund(db, escrow=escrow, principal=p(buyer))

    db.expire_all()
    escrow = escrows.find(db, escrow_id=escrow.escrow_id)
    assert escrow.status == "pending"
    assert escrow.version == 1
    assert _actions(db, escrow) == ["create"]


def test_wrong_party_is_rejected(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller)
    with pytest.raises(UnauthorizedActorError):
        escrows.accept(db, escrow=escrow, principal=p(buyer))

    escrow = escrows.accept(db, escrow=escrow, principal=p(seller))
    with pytest.raises(UnauthorizedActorError):
        escrows.fund(db, escrow=escrow, principal=p(seller))


def test_outsider_cannot_see_or_touch(db, escrows, buyer, seller, outsider):
    escrow = new_escrow(escrows, db, buyer, seller)
    with pytest.raises(NotFoundError):
        escrows.get_escrow(db, escrow_id=escrow.escrow_id, principal=p(outsider))
    with pytest.raises(NotFoundError):
        escrows.accept(db, escrow=escrow, principal=p(outsider))


def test_admin_with_view_permission_can_read(db, escrows, buyer, seller):
    viewer = add_user(
        db, "Viewer", "viewer@example.com",
        role=UserRole.admin, admin_role=AdminRole.admin,
        permissions=[AdminPermission.view_transactions.value],
    )
    escrow = new_escrow(escrows, db, buyer, seller)
    assert escrows.get_escrow(db, escrow_id=escrow.escrow_id, principal=p(viewer)).id == escrow.id


def test_cancel_only_before_funding(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller)
    escrow = escrows.cancel(db, escrow=escrow, principal=p(buyer), reason="changed my mind")
    assert escrow.status == "cancelled"
    assert escrow.cancelled_at is not None

    funded = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    with pytest.raises(InvalidTransitionError):
        escrows.cancel(db, escrow=funded, principal=p(buyer))


# ─────────────────────────────────────────────
# reads
# ─────────────────────────────────────────────

def test_list_escrows_by_role_and_status(db, escrows, buyer, seller):
    a = new_escrow(escrows, db, buyer, seller)
    b = new_escrow(escrows, db, seller, buyer, seller_email=buyer.email)
    escrows.accept(db, escrow=a, principal=p(seller))

    mine = escrows.list_escrows(db, principal=p(buyer))
    assert {e.escrow_id for e in mine} == {a.escrow_id, b.escrow_id}

    as_buyer = escrows.list_escrows(db, principal=p(buyer), role="buyer")
    assert [e.escrow_id for e in as_buyer] == [a.escrow_id]

    accepted = escrows.list_escrows(db, principal=p(seller), status="accepted")
    assert [e.escrow_id for e in accepted] == [a.escrow_id]


def test_event_feed_cursor(db, escrows, buyer, seller):
    escrow = new_escrow(escrows, db, buyer, seller)
    rows, cursor = escrows.fetch_since(db, escrow=escrow, cursor=0)
    assert [r.action for r in rows] == ["create"]

    escrow = drive_to(escrows, db, escrow, buyer, seller, "funded")
    rows, cursor2 = escrows.fetch_since(db, escrow=escrow, cursor=cursor)
    assert [r.action for r in rows] == ["accept", "fund"]
    assert cursor2 > cursor

    rows, cursor3 = escrows.fetch_since(db, escrow=escrow, cursor=cursor2)
    assert rows == []
    assert cursor3 == cursor2


def test_event_feed_pages(db, escrows, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "in_progress")
    first, cursor = escrows.fetch_since(db, escrow=escrow, cursor=0, limit=2)
    rest, _ = escrows.fetch_since(db, escrow=escrow, cursor=cursor, limit=2)
    assert [r.action for r in first + rest] == ["create", "accept", "fund", "start"]


def test_dashboard_stats_per_side(db, escrows, buyer, seller, outsider):
    new_escrow(escrows, db, buyer, seller)
    drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    new_escrow(escrows, db, seller, buyer, seller_email=buyer.email)

    stats = escrows.dashboard_stats(db, principal=p(buyer))
    assert stats["total"] == 3
    assert stats["buying"] == {"total": 2, "pending": 1, "funded": 1, "completed": 0}
    assert stats["selling"] == {"total": 1, "pending": 1, "delivered": 0, "completed": 0}
    assert stats["disputed"] == 0
    # start the funded deal; accept the one where they sell
    assert stats["requires_action"] == 2

    seller_stats = escrows.dashboard_stats(db, principal=p(seller))
    assert seller_stats["buying"]["total"] == 1
    assert seller_stats["selling"]["total"] == 2
    assert seller_stats["requires_action"] == 2

    assert escrows.dashboard_stats(db, principal=p(outsider))["total"] == 0


def test_can_create_reports_tier_limits(db, escrows, seller):
    starter = add_user(db, "Stella Starter", "starter@example.com", tier="starter")

    check = escrows.can_create(db, principal=p(starter))
    assert check["can_create"] is True
    assert check["blocking_reason"] is None
    assert check["tier"] == "starter"
    assert check["limits"]["max_transaction_amount"] == Decimal("500")
    assert check["limits"]["max_transactions_per_month"] == 10
    assert check["limits"]["used_this_month"] == 0

    too_big = escrows.can_create(db, principal=p(starter), amount=Decimal("600"))
    assert too_big["can_create"] is False
    assert too_big["requires_action"] == "upgrade_tier"
    assert "500" in too_big["blocking_reason"]

    new_escrow(escrows, db, starter, seller, amount=Decimal("100"))
    assert escrows.can_create(db, principal=p(starter), amount="100")["limits"]["used_this_month"] == 1

    with pytest.raises(ValidationError):
        escrows.can_create(db, principal=p(starter), currency="XOF")


# ─────────────────────────────────────────────
# archive
# ─────────────────────────────────────────────

def test_archive_only_terminal(db, escrows, buyer, seller, master):
    escrow = new_escrow(escrows, db, buyer, seller)
    with pytest.raises(InvalidStateError):
        escrows.archive(db, escrow=escrow, admin=p(master))

    escrow = escrows.cancel(db, escrow=escrow, principal=p(seller))
    escrow = escrows.archive(db, escrow=escrow, admin=p(master))
    assert escrow.archived_at is not None
    assert escrow.status == "cancelled"
    assert escrows.list_escrows(db, principal=p(buyer)) == []

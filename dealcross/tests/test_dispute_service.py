from decimal import Decimal

import pytest

from conftest import drive_to, new_escrow, p

from dealcross.core.errors import (
    AlreadyResolvedError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from dealcross.models.enums import ActorRole, DisputeReason, DisputeWinner
from dealcross.policies.rbac import Actor, arbitrator_actor, party_actor
from dealcross.services.dispute_service import DisputeService


@pytest.fixture()
def disputes(notifier):
    return DisputeService(notifier=notifier)


def _raise(disputes, db, escrow, user, reason=DisputeReason.item_not_as_described):
    return disputes.raise_dispute(
        db,
        escrow=escrow,
        reason=reason,
        description="Lens is cracked",
        evidence=["https://files.example.com/photo1.jpg"],
        initiator=party_actor(escrow, p(user)),
    )


def test_raise_then_seller_wins_completes(db, escrows, disputes, buyer, seller, arbitrator, notifier):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_pending")
    escrow = escrows.fail_inspection(db, escrow=escrow, principal=p(buyer))

    dispute = _raise(disputes, db, escrow, buyer)
    assert dispute.dispute_id.startswith("DSP")
    assert dispute.status == "open"
    assert dispute.initiator_role == "buyer"
    assert dispute.escrow.status == "disputed"
    assert any(kind == "dispute_raised" for _, kind, _ in notifier.sent)

    dispute = disputes.resolve_dispute(
        db,
        dispute=dispute,
        winner=DisputeWinner.seller,
        refund_amount=None,
        summary="Damage happened after delivery",
        arbitrator=arbitrator_actor(p(arbitrator)),
    )
    assert dispute.status == "resolved"
    assert dispute.winner == "seller"
    assert dispute.resolved_by == str(arbitrator.id)
    assert dispute.escrow.status == "completed"
    assert dispute.escrow.released_amount == Decimal("1000")

    # a completed escrow still pays out with the funded rates
    escrow = escrows.payout(db, escrow=dispute.escrow)
    assert escrow.status == "paid_out"
    assert escrow.net_payout == Decimal("985")


def test_buyer_wins_full_refund_by_default(db, escrows, disputes, buyer, seller, arbitrator):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    dispute = _raise(disputes, db, escrow, seller, reason=DisputeReason.buyer_not_responding)

    dispute = disputes.resolve_dispute(
        db,
        dispute=dispute,
        winner=DisputeWinner.buyer,
        refund_amount=None,
        summary="Refund",
        arbitrator=arbitrator_actor(p(arbitrator)),
    )
    assert dispute.escrow.status == "refunded"
    assert dispute.refund_amount == Decimal("1000")
    assert dispute.escrow.released_amount == Decimal("0")


def test_buyer_wins_partial_refund(db, escrows, disputes, buyer, seller, arbitrator):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "in_progress")
    dispute = _raise(disputes, db, escrow, buyer)

    dispute = disputes.resolve_dispute(
        db,
        dispute=dispute,
        winner=DisputeWinner.buyer,
        refund_amount=Decimal("400"),
        summary="Split",
        arbitrator=arbitrator_actor(p(arbitrator)),
    )
    assert dispute.escrow.refund_amount == Decimal("400")
    assert dispute.escrow.released_amount == Decimal("600")


@pytest.mark.parametrize(
    "winner,refund",
    [
        (DisputeWinner.seller, Decimal("10")),
        (DisputeWinner.buyer, Decimal("0")),
        (DisputeWinner.buyer, Decimal("1000.01")),
    ],
)
def test_resolution_amount_rules(db, escrows, disputes, buyer, seller, arbitrator, winner, refund):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    dispute = _raise(disputes, db, escrow, buyer)

    with pytest.raises(ValidationError):
        disputes.resolve_dispute(
            db, dispute=dispute, winner=winner, refund_amount=refund, summary="x",
            arbitrator=arbitrator_actor(p(arbitrator)),
        )
    db.refresh(dispute)
    assert dispute.status == "open"
    assert dispute.escrow.status == "disputed"


def test_resolve_twice(db, escrows, disputes, buyer, seller, arbitrator):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    dispute = _raise(disputes, db, escrow, buyer)
    judge = arbitrator_actor(p(arbitrator))

    disputes.resolve_dispute(db, dispute=dispute, winner="seller", refund_amount=None, summary="ok", arbitrator=judge)
    with pytest.raises(AlreadyResolvedError):
        disputes.resolve_dispute(db, dispute=dispute, winner="buyer", refund_amount=None, summary="no", arbitrator=judge)
    with pytest.raises(AlreadyResolvedError):
        disputes.assign(db, dispute=dispute, arbitrator=judge)


def test_one_open_dispute_per_escrow(db, escrows, disputes, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    _raise(disputes, db, escrow, buyer)
    with pytest.raises(InvalidStateError):
        _raise(disputes, db, escrow, seller)


def test_no_dispute_on_terminal_escrow(db, escrows, disputes, buyer, seller):
    escrow = escrows.cancel(db, escrow=new_escrow(escrows, db, buyer, seller), principal=p(buyer))
    with pytest.raises(InvalidStateError):
        _raise(disputes, db, escrow, buyer)


def test_description_required(db, escrows, disputes, buyer, seller):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    with pytest.raises(ValidationError):
        disputes.raise_dispute(
            db, escrow=escrow, reason="other", description="   ", evidence=[],
            initiator=party_actor(escrow, p(buyer)),
        )
    assert disputes.list(db) == []


def test_only_dispute_managers_arbitrate(db, buyer, fee_admin, master):
    with pytest.raises(PermissionDeniedError):
        arbitrator_actor(p(buyer))
    with pytest.raises(PermissionDeniedError):
        arbitrator_actor(p(fee_admin))
    assert arbitrator_actor(p(master)).role == ActorRole.arbitrator


def test_assign_and_read(db, escrows, disputes, buyer, seller, arbitrator):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    dispute = _raise(disputes, db, escrow, buyer)

    dispute = disputes.assign(db, dispute=dispute, arbitrator=Actor(str(arbitrator.id), ActorRole.arbitrator))
    assert dispute.status == "under_review"
    assert dispute.assigned_to == str(arbitrator.id)

    assert disputes.get(db, dispute_id=dispute.dispute_id).id == dispute.id
    assert [d.dispute_id for d in disputes.list(db, status="under_review")] == [dispute.dispute_id]
    assert disputes.list(db, status="open") == []
    with pytest.raises(NotFoundError):
        disputes.get(db, dispute_id="DSP-missing")

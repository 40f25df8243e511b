from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from conftest import drive_to, new_escrow, p

from dealcross.core.timeutil import utcnow
from dealcross.models.enums import DisputeReason, DisputeWinner
from dealcross.models.escrow import EscrowTimelineEntry
from dealcross.policies.rbac import arbitrator_actor, party_actor
from dealcross.services.dispute_service import DisputeService
from dealcross.services.sweep_service import SweepService


def _last_event(db, escrow):
    return db.execute(
        select(EscrowTimelineEntry)
        .where(EscrowTimelineEntry.escrow_pk == escrow.id)
        .order_by(EscrowTimelineEntry.seq.desc())
        .limit(1)
    ).scalar_one()


def test_elapsed_inspection_passes_as_system(db, escrows, buyer, seller, notifier):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_pending")
    sweep = SweepService(notifier=notifier)

    assert sweep.run_once(db, now=utcnow())["inspections_passed"] == 0

    counts = sweep.run_once(db, now=utcnow() + timedelta(days=4))
    assert counts == {"inspections_passed": 1, "expired": 0, "paid_out": 0, "skipped": 0}

    db.refresh(escrow)
    assert escrow.status == "inspection_passed"
    event = _last_event(db, escrow)
    assert (event.action, event.actor_role, event.note) == ("pass", "system", "sweep")


def test_stale_escrows_expire(db, escrows, buyer, seller):
    pending = new_escrow(escrows, db, buyer, seller)
    accepted = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "accepted")
    in_progress = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "in_progress")

    counts = SweepService().run_once(db, now=utcnow() + timedelta(days=31))
    assert counts["expired"] == 2

    for escrow, status in ((pending, "pending"), (accepted, "expired"), (in_progress, "expired")):
        db.refresh(escrow)
        assert escrow.status == status


def test_sweep_is_idempotent(db, escrows, buyer, seller):
    drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "funded")
    later = utcnow() + timedelta(days=31)

    assert SweepService().run_once(db, now=later)["expired"] == 1
    assert SweepService().run_once(db, now=later) == {"inspections_passed": 0, "expired": 0, "paid_out": 0, "skipped": 0}


def _seller_wins(db, escrow, buyer, arbitrator):
    disputes = DisputeService()
    dispute = disputes.raise_dispute(
        db,
        escrow=escrow,
        reason=DisputeReason.item_not_as_described,
        description="Buyer says the box was empty",
        evidence=[],
        initiator=party_actor(escrow, p(buyer)),
    )
    disputes.resolve_dispute(
        db,
        dispute=dispute,
        winner=DisputeWinner.seller,
        refund_amount=None,
        summary="Courier photos show the item",
        arbitrator=arbitrator_actor(p(arbitrator)),
    )


def test_completed_escrows_are_paid_out(db, escrows, buyer, seller, arbitrator, notifier):
    escrow = drive_to(escrows, db, new_escrow(escrows, db, buyer, seller), buyer, seller, "inspection_pending")
    _seller_wins(db, escrow, buyer, arbitrator)
    db.refresh(escrow)
    assert escrow.status == "completed"

    counts = SweepService(notifier=notifier).run_once(db)
    assert counts == {"inspections_passed": 0, "expired": 0, "paid_out": 1, "skipped": 0}

    db.refresh(escrow)
    assert escrow.status == "paid_out"
    assert escrow.net_payout == Decimal("985")
    event = _last_event(db, escrow)
    assert (event.action, event.actor_role) == ("payout", "system")
    assert any(kind == "escrow_paid_out" for _, kind, _ in notifier.sent)

    assert SweepService().run_once(db)["paid_out"] == 0

from datetime import timedelta
from decimal import Decimal

import pytest

from dealcross.core.errors import InvalidStateError, InvalidTransitionError, UnauthorizedActorError
from dealcross.core.escrow_graph import ESCROW_TRANSITIONS, actions_for, allowed_actions, reachable_statuses
from dealcross.core.timeutil import utcnow
from dealcross.models.enums import (
    TERMINAL_STATUSES,
    ActorRole,
    EscrowAction,
    EscrowStatus,
    MilestoneEvent,
    MilestoneStatus,
)
from dealcross.models.escrow import Escrow, EscrowMilestone
from dealcross.policies.rbac import Actor
from dealcross.services.lifecycle_service import LifecycleService

S = EscrowStatus


def _escrow(status, **kw):
    past = utcnow() - timedelta(days=1)
    kw.setdefault("inspection_expires_at", past)
    kw.setdefault("expires_at", past)
    return Escrow(status=status.value, escrow_id="ESC-T", **kw)


def _actor(role):
    return Actor(actor_id=f"{role.value}-1", role=role)


def test_every_status_is_reachable_from_pending():
    assert reachable_statuses() == frozenset(EscrowStatus)


def test_terminal_statuses_have_no_outgoing_edges():
    for status in TERMINAL_STATUSES - {S.completed}:
        assert allowed_actions(status) == frozenset()


def test_completed_only_pays_out():
    assert allowed_actions(S.completed) == {EscrowAction.payout}
    assert ESCROW_TRANSITIONS[EscrowAction.payout].roles == {ActorRole.system}


def test_disputed_only_resolves():
    assert allowed_actions(S.disputed) == {EscrowAction.resolve}


@pytest.mark.parametrize(
    "action,source,role,dest",
    [
        (EscrowAction.accept, S.pending, ActorRole.seller, S.accepted),
        (EscrowAction.fund, S.accepted, ActorRole.buyer, S.funded),
        (EscrowAction.start, S.funded, ActorRole.buyer, S.in_progress),
        (EscrowAction.start, S.funded, ActorRole.seller, S.in_progress),
        (EscrowAction.deliver, S.in_progress, ActorRole.seller, S.delivered),
        (EscrowAction.begin_inspection, S.delivered, ActorRole.system, S.inspection_pending),
        (EscrowAction.pass_inspection, S.inspection_pending, ActorRole.buyer, S.inspection_passed),
        (EscrowAction.pass_inspection, S.inspection_pending, ActorRole.system, S.inspection_passed),
        (EscrowAction.fail_inspection, S.inspection_pending, ActorRole.buyer, S.inspection_failed),
        (EscrowAction.confirm, S.inspection_passed, ActorRole.buyer, S.completed),
        (EscrowAction.raise_dispute, S.funded, ActorRole.seller, S.disputed),
        (EscrowAction.raise_dispute, S.inspection_failed, ActorRole.buyer, S.disputed),
        (EscrowAction.payout, S.completed, ActorRole.system, S.paid_out),
        (EscrowAction.cancel, S.pending, ActorRole.buyer, S.cancelled),
        (EscrowAction.cancel, S.accepted, ActorRole.seller, S.cancelled),
        (EscrowAction.expire, S.in_progress, ActorRole.system, S.expired),
    ],
)
def test_allowed_edges(action, source, role, dest):
    assert LifecycleService().check(_escrow(source), action, _actor(role)) == dest


@pytest.mark.parametrize("target", [S.completed, S.refunded])
def test_resolve_requires_explicit_target(target):
    svc = LifecycleService()
    escrow = _escrow(S.disputed)
    assert svc.check(escrow, EscrowAction.resolve, _actor(ActorRole.arbitrator), target=target) == target
    with pytest.raises(InvalidTransitionError):
        svc.check(escrow, EscrowAction.resolve, _actor(ActorRole.arbitrator))
    with pytest.raises(InvalidTransitionError):
        svc.check(escrow, EscrowAction.resolve, _actor(ActorRole.arbitrator), target=S.cancelled)


def test_every_action_from_a_non_source_status_is_rejected():
    svc = LifecycleService()
    for action, edge in ESCROW_TRANSITIONS.items():
        role = next(iter(edge.roles))
        for status in EscrowStatus:
            if status in edge.sources:
                continue
            escrow = _escrow(status)
            with pytest.raises(InvalidTransitionError):
                svc.check(escrow, action, _actor(role), target=next(iter(edge.targets)))
            assert escrow.status == status.value


def test_every_action_rejects_roles_outside_the_edge():
    svc = LifecycleService()
    for action, edge in ESCROW_TRANSITIONS.items():
        source = next(iter(edge.sources))
        for role in ActorRole:
            if role in edge.roles:
                continue
            with pytest.raises(UnauthorizedActorError):
                svc.check(_escrow(source), action, _actor(role), target=next(iter(edge.targets)))


def test_system_pass_waits_for_inspection_window():
    escrow = _escrow(S.inspection_pending, inspection_expires_at=utcnow() + timedelta(hours=1))
    with pytest.raises(InvalidTransitionError):
        LifecycleService().check(escrow, EscrowAction.pass_inspection, _actor(ActorRole.system))
    # the buyer may pass early
    assert LifecycleService().check(escrow, EscrowAction.pass_inspection, _actor(ActorRole.buyer)) == S.inspection_passed


def test_expire_waits_for_expiry():
    escrow = _escrow(S.funded, expires_at=utcnow() + timedelta(days=1))
    with pytest.raises(InvalidTransitionError):
        LifecycleService().check(escrow, EscrowAction.expire, _actor(ActorRole.system))
    assert (
        LifecycleService().check(
            escrow, EscrowAction.expire, _actor(ActorRole.system), now=utcnow() + timedelta(days=2)
        )
        == S.expired
    )


def test_actions_for_filters_by_role():
    assert actions_for(S.pending, ActorRole.seller) == {
        EscrowAction.accept, EscrowAction.cancel, EscrowAction.raise_dispute,
    }
    assert actions_for(S.inspection_pending, ActorRole.seller) == {EscrowAction.raise_dispute}
    assert actions_for(S.paid_out, ActorRole.buyer) == frozenset()


# ─────────────────────────────────────────────
# milestones
# ─────────────────────────────────────────────

def _milestone(status):
    return EscrowMilestone(position=0, description="Phase", amount=Decimal("10"), status=status.value)


def test_release_only_once_every_milestone_is_approved():
    svc = LifecycleService()
    system = _actor(ActorRole.system)

    done = _escrow(S.in_progress, milestones=[_milestone(MilestoneStatus.approved)])
    assert svc.check(done, EscrowAction.release_milestones, system) == S.completed

    open_ = _escrow(
        S.in_progress,
        milestones=[_milestone(MilestoneStatus.approved), _milestone(MilestoneStatus.submitted)],
    )
    with pytest.raises(InvalidTransitionError):
        svc.check(open_, EscrowAction.release_milestones, system)

    with pytest.raises(InvalidTransitionError):
        svc.check(_escrow(S.in_progress), EscrowAction.release_milestones, system)


@pytest.mark.parametrize(
    "event,escrow_status,role,current,target",
    [
        (MilestoneEvent.added, S.pending, ActorRole.buyer, None, MilestoneStatus.pending),
        (MilestoneEvent.added, S.accepted, ActorRole.seller, None, MilestoneStatus.pending),
        (MilestoneEvent.submitted, S.in_progress, ActorRole.seller, MilestoneStatus.pending, MilestoneStatus.submitted),
        (MilestoneEvent.submitted, S.in_progress, ActorRole.seller, MilestoneStatus.rejected, MilestoneStatus.submitted),
        (MilestoneEvent.approved, S.in_progress, ActorRole.buyer, MilestoneStatus.submitted, MilestoneStatus.approved),
        (MilestoneEvent.rejected, S.in_progress, ActorRole.buyer, MilestoneStatus.submitted, MilestoneStatus.rejected),
    ],
)
def test_milestone_rules(event, escrow_status, role, current, target):
    milestone = _milestone(current) if current else None
    assert LifecycleService().check_milestone(_escrow(escrow_status), milestone, event, _actor(role)) == target


def test_milestone_rules_reject_wrong_status_role_or_state():
    svc = LifecycleService()
    with pytest.raises(InvalidStateError):
        svc.check_milestone(_escrow(S.funded), None, MilestoneEvent.added, _actor(ActorRole.buyer))
    with pytest.raises(UnauthorizedActorError):
        svc.check_milestone(
            _escrow(S.in_progress), _milestone(MilestoneStatus.pending), MilestoneEvent.submitted, _actor(ActorRole.buyer)
        )
    with pytest.raises(InvalidStateError):
        svc.check_milestone(
            _escrow(S.in_progress), _milestone(MilestoneStatus.approved), MilestoneEvent.rejected, _actor(ActorRole.buyer)
        )

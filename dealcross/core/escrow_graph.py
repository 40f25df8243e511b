# dealcross/core/escrow_graph.py
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from dealcross.models.enums import (
    ActorRole,
    EscrowAction,
    EscrowStatus,
    MilestoneEvent,
    MilestoneStatus,
    TERMINAL_STATUSES,
)

S = EscrowStatus
R = ActorRole


@dataclass(frozen=True)
class Edge:
    sources: FrozenSet[EscrowStatus]
    targets: FrozenSet[EscrowStatus]
    roles: FrozenSet[ActorRole]

    @property
    def default_target(self) -> Optional[EscrowStatus]:
        if len(self.targets) == 1:
            return next(iter(self.targets))
        return None


def _edge(sources, targets, roles) -> Edge:
    return Edge(frozenset(sources), frozenset(targets), frozenset(roles))


DISPUTABLE_STATUSES = frozenset(
    s for s in EscrowStatus if s not in TERMINAL_STATUSES and s != S.disputed
)

ESCROW_TRANSITIONS = {
    EscrowAction.accept: _edge({S.pending}, {S.accepted}, {R.seller}),
    EscrowAction.fund: _edge({S.accepted}, {S.funded}, {R.buyer}),
    EscrowAction.start: _edge({S.funded}, {S.in_progress}, {R.buyer, R.seller}),
    EscrowAction.deliver: _edge({S.in_progress}, {S.delivered}, {R.seller}),
    EscrowAction.begin_inspection: _edge({S.delivered}, {S.inspection_pending}, {R.system}),
    EscrowAction.pass_inspection: _edge({S.inspection_pending}, {S.inspection_passed}, {R.buyer, R.system}),
    EscrowAction.fail_inspection: _edge({S.inspection_pending}, {S.inspection_failed}, {R.buyer}),
    EscrowAction.confirm: _edge({S.inspection_passed}, {S.completed}, {R.buyer}),
    EscrowAction.raise_dispute: _edge(DISPUTABLE_STATUSES, {S.disputed}, {R.buyer, R.seller}),
    EscrowAction.resolve: _edge({S.disputed}, {S.completed, S.refunded}, {R.arbitrator}),
    EscrowAction.payout: _edge({S.completed}, {S.paid_out}, {R.system}),
    EscrowAction.cancel: _edge({S.pending, S.accepted}, {S.cancelled}, {R.buyer, R.seller}),
    EscrowAction.expire: _edge({S.accepted, S.funded, S.in_progress}, {S.expired}, {R.system}),
    EscrowAction.release_milestones: _edge({S.in_progress}, {S.completed}, {R.system}),
}


def allowed_actions(status: EscrowStatus) -> FrozenSet[EscrowAction]:
    return frozenset(a for a, e in ESCROW_TRANSITIONS.items() if status in e.sources)


def reachable_statuses() -> FrozenSet[EscrowStatus]:
    """Every status reachable from pending through the graph (pending included)."""
    seen = {S.pending}
    frontier = [S.pending]
    while frontier:
        cur = frontier.pop()
        for action in allowed_actions(cur):
            for nxt in ESCROW_TRANSITIONS[action].targets:
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
    return frozenset(seen)


def actions_for(status: EscrowStatus, role: ActorRole) -> FrozenSet[EscrowAction]:
    """Actions `role` may take on an escrow in `status` (time guards aside)."""
    return frozenset(a for a, e in ESCROW_TRANSITIONS.items() if status in e.sources and role in e.roles)


# ─────────────────────────────────────────────
# Milestones
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class MilestoneRule:
    escrow_sources: FrozenSet[EscrowStatus]
    roles: FrozenSet[ActorRole]
    # None: the milestone does not exist yet
    milestone_sources: FrozenSet[Optional[MilestoneStatus]]
    milestone_target: MilestoneStatus


MILESTONE_RULES = {
    MilestoneEvent.added: MilestoneRule(
        frozenset({S.pending, S.accepted}), frozenset({R.buyer, R.seller}),
        frozenset({None}), MilestoneStatus.pending,
    ),
    MilestoneEvent.submitted: MilestoneRule(
        frozenset({S.in_progress}), frozenset({R.seller}),
        frozenset({MilestoneStatus.pending, MilestoneStatus.rejected}), MilestoneStatus.submitted,
    ),
    MilestoneEvent.approved: MilestoneRule(
        frozenset({S.in_progress}), frozenset({R.buyer}),
        frozenset({MilestoneStatus.submitted}), MilestoneStatus.approved,
    ),
    MilestoneEvent.rejected: MilestoneRule(
        frozenset({S.in_progress}), frozenset({R.buyer}),
        frozenset({MilestoneStatus.submitted}), MilestoneStatus.rejected,
    ),
}

# dealcross/services/fee_schedule_service.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from dealcross.core.errors import TierNotConfiguredError, ValidationError
from dealcross.core.timeutil import utcnow
from dealcross.models.enums import FeeField, FeeHistoryAction, Tier
from dealcross.models.escrow import Escrow
from dealcross.models.fee_schedule import FeeHistoryEntry, FeeSchedule
from dealcross.services.audit_service import AuditAction, AuditService
from dealcross.services.payout_calculator import FeeBreakdown, compute_fees, quantize_money, to_decimal

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# DEFAULTS (USD base)
# ─────────────────────────────────────────────

TIER_DEFAULTS_USD: Dict[str, Dict[str, Decimal]] = {
    Tier.starter.value: {
        "buyer_fee_rate": Decimal("0.0175"),
        "seller_fee_rate": Decimal("0.0175"),
        "monthly_cost": Decimal("0"),
        "setup_fee": Decimal("0"),
        "max_transaction_amount": Decimal("500"),
        "max_transactions_per_month": 10,
    },
    Tier.growth.value: {
        "buyer_fee_rate": Decimal("0.015"),
        "seller_fee_rate": Decimal("0.015"),
        "monthly_cost": Decimal("5"),
        "setup_fee": Decimal("0"),
        "max_transaction_amount": Decimal("5000"),
        "max_transactions_per_month": 50,
    },
    Tier.enterprise.value: {
        "buyer_fee_rate": Decimal("0.0125"),
        "seller_fee_rate": Decimal("0.0125"),
        "monthly_cost": Decimal("15"),
        "setup_fee": Decimal("0"),
        "max_transaction_amount": Decimal("-1"),
        "max_transactions_per_month": -1,
    },
    Tier.api.value: {
        "buyer_fee_rate": Decimal("0.01"),
        "seller_fee_rate": Decimal("0.01"),
        "monthly_cost": Decimal("50"),
        "setup_fee": Decimal("80"),
        "max_transaction_amount": Decimal("-1"),
        "max_transactions_per_month": -1,
    },
}

# currencies seeded by default, with their USD conversion rate
DEFAULT_CURRENCY_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "NGN": Decimal("1550"),
    "KES": Decimal("129"),
    "GHS": Decimal("12"),
    "ZAR": Decimal("18.5"),
    "INR": Decimal("83"),
    "CNY": Decimal("7.2"),
    "JPY": Decimal("148"),
    "CAD": Decimal("1.35"),
    "AUD": Decimal("1.52"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
}

RATE_FIELDS = {FeeField.buyer_fee_rate.value, FeeField.seller_fee_rate.value}
MONEY_FIELDS = {FeeField.monthly_cost.value, FeeField.setup_fee.value}
LIMIT_FIELDS = {FeeField.max_transaction_amount.value, FeeField.max_transactions_per_month.value}
RATE_PLACES = 6


def default_values(tier: str, currency: str) -> Dict[str, Any]:
    base = TIER_DEFAULTS_USD[tier]
    fx = DEFAULT_CURRENCY_RATES[currency]
    out: Dict[str, Any] = {
        "buyer_fee_rate": base["buyer_fee_rate"],
        "seller_fee_rate": base["seller_fee_rate"],
        "monthly_cost": quantize_money(base["monthly_cost"] * fx, currency),
        "setup_fee": quantize_money(base["setup_fee"] * fx, currency),
        "max_transactions_per_month": base["max_transactions_per_month"],
    }
    max_amt = base["max_transaction_amount"]
    out["max_transaction_amount"] = max_amt if max_amt == -1 else quantize_money(max_amt * fx, currency)
    return out


def validate_fee_value(field: str, value: Any) -> Any:
    """
    Field-specific constraints:
    - rates in [0, 1), at most 6 decimal places
    - monthly_cost / setup_fee >= 0
    - max_transaction_amount >= -1
    - max_transactions_per_month integer >= -1
    """
    if field not in RATE_FIELDS | MONEY_FIELDS | LIMIT_FIELDS:
        raise ValidationError(f"Unknown fee field: {field}.")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric.")

    dec = to_decimal(value, field)

    if field in RATE_FIELDS:
        if dec < 0 or dec >= 1:
            raise ValidationError(f"{field} must be in [0, 1).")
        if dec != dec.quantize(Decimal(1).scaleb(-RATE_PLACES)):
            raise ValidationError(f"{field} supports at most {RATE_PLACES} decimal places.")
        return dec

    if field in MONEY_FIELDS:
        if dec < 0:
            raise ValidationError(f"{field} must be >= 0.")
        return dec

    if dec < -1:
        raise ValidationError(f"{field} must be >= -1.")
    if field == FeeField.max_transactions_per_month.value:
        if dec != dec.to_integral_value():
            raise ValidationError(f"{field} must be an integer.")
        return int(dec)
    return dec


def _same(a: Any, b: Any) -> bool:
    return Decimal(str(a)) == Decimal(str(b))


class FeeScheduleService:
    # ---------------------------
    # READS
    # ---------------------------

    def find(self, db: Session, *, tier: str, currency: str) -> Optional[FeeSchedule]:
        return db.execute(
            select(FeeSchedule).where(FeeSchedule.tier == tier, FeeSchedule.currency == currency)
        ).scalar_one_or_none()

    def get_fee_schedule(self, db: Session, *, tier: str, currency: str) -> FeeSchedule:
        row = self.find(db, tier=tier, currency=currency)
        if not row:
            raise TierNotConfiguredError(f"No fee schedule configured for tier {tier} / {currency}.")
        return row

    def list_schedules(self, db: Session, *, tier: Optional[str] = None) -> List[FeeSchedule]:
        q = select(FeeSchedule).order_by(FeeSchedule.tier.asc(), FeeSchedule.currency.asc())
        if tier:
            q = q.where(FeeSchedule.tier == tier)
        return list(db.execute(q).scalars().all())

    def history(
        self,
        db: Session,
        *,
        tier: Optional[str] = None,
        currency: Optional[str] = None,
        limit: int = 50,
    ) -> List[FeeHistoryEntry]:
        q = select(FeeHistoryEntry)
        if tier:
            q = q.where(FeeHistoryEntry.tier == tier)
        if currency:
            q = q.where(FeeHistoryEntry.currency == currency)
        q = q.order_by(FeeHistoryEntry.created_at.desc()).limit(limit)
        return list(db.execute(q).scalars().all())

    # ---------------------------
    # FEES
    # ---------------------------

    def fee_preview(self, db: Session, *, amount: Any, currency: str, tier: str) -> FeeBreakdown:
        row = self.get_fee_schedule(db, tier=tier, currency=currency)
        return compute_fees(amount, tier, currency, {(tier, currency): row})

    def monthly_usage(self, db: Session, *, buyer_id) -> int:
        """Escrows the buyer opened since the start of the current UTC month."""
        month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return db.execute(
            select(func.count(Escrow.id)).where(
                Escrow.buyer_id == buyer_id,
                Escrow.created_at >= month_start,
            )
        ).scalar_one()

    def check_limits(self, db: Session, *, buyer_id, tier: str, currency: str, amount: Decimal) -> FeeSchedule:
        """
        Tier limits at escrow creation:
        - amount <= max_transaction_amount (unless -1)
        - escrows created this calendar month < max_transactions_per_month (unless -1)
        """
        row = self.get_fee_schedule(db, tier=tier, currency=currency)

        max_amt = Decimal(str(row.max_transaction_amount))
        if max_amt != -1 and amount > max_amt:
            raise ValidationError(
                f"Amount exceeds the {tier} tier limit of {max_amt} {currency}.",
                kind="tier_limit_exceeded",
            )

        if row.max_transactions_per_month != -1:
            used = self.monthly_usage(db, buyer_id=buyer_id)
            if used >= row.max_transactions_per_month:
                raise ValidationError(
                    f"Monthly transaction limit of {row.max_transactions_per_month} reached for the {tier} tier.",
                    kind="tier_limit_exceeded",
                )
        return row

    # ---------------------------
    # MUTATIONS
    # ---------------------------

    def _history_row(
        self,
        *,
        tier: str,
        currency: str,
        field: str,
        old_value: Any,
        new_value: Any,
        action: FeeHistoryAction,
        actor: str,
        at: datetime,
    ) -> FeeHistoryEntry:
        return FeeHistoryEntry(
            tier=tier,
            currency=currency,
            field=field,
            old_value=None if old_value is None else Decimal(str(old_value)),
            new_value=None if new_value is None else Decimal(str(new_value)),
            action=action.value,
            actor=actor,
            created_at=at,
        )

    def update_fee(
        self,
        db: Session,
        *,
        tier: str,
        currency: str,
        field: str,
        new_value: Any,
        actor: str,
        request_id: Optional[str] = None,
    ) -> FeeSchedule:
        """
        Validate, apply, and append a FeeHistoryEntry in one commit.
        Last writer wins; the history keeps every prior value.
        """
        value = validate_fee_value(field, new_value)
        row = self.get_fee_schedule(db, tier=tier, currency=currency)

        old_value = getattr(row, field)
        now = utcnow()

        setattr(row, field, value)
        row.updated_by = actor

        db.add(
            self._history_row(
                tier=tier,
                currency=currency,
                field=field,
                old_value=old_value,
                new_value=value,
                action=FeeHistoryAction.update,
                actor=actor,
                at=now,
            )
        )
        AuditService().record(
            db,
            actor_id=actor,
            actor_role="admin",
            subject_type="fee_schedule",
            subject_id=f"{tier}:{currency}",
            action=AuditAction.FEE_UPDATED,
            payload_summary={"field": field, "old": old_value, "new": value},
            request_id=request_id,
        )
        db.commit()
        db.refresh(row)

        logger.info(
            "fee schedule updated",
            extra={"tier": tier, "currency": currency, "field": field, "actor": actor, "request_id": request_id},
        )
        return row

    def reset_tier(
        self,
        db: Session,
        *,
        tier: str,
        actor: str,
        request_id: Optional[str] = None,
    ) -> List[FeeSchedule]:
        """
        Restore hard-coded defaults for every seeded currency of a tier.
        Each changed field gets a reset history row; an already-default
        entry still logs one "*" row so the reset itself is recorded.
        """
        if tier not in TIER_DEFAULTS_USD:
            raise TierNotConfiguredError(f"Unknown tier {tier}.")

        now = utcnow()
        rows: List[FeeSchedule] = []

        for currency in DEFAULT_CURRENCY_RATES:
            defaults = default_values(tier, currency)
            row = self.find(db, tier=tier, currency=currency)
            changed = 0

            if row is None:
                row = FeeSchedule(tier=tier, currency=currency, updated_by=actor, **defaults)
                db.add(row)
                for field, value in defaults.items():
                    db.add(self._history_row(
                        tier=tier, currency=currency, field=field, old_value=None, new_value=value,
                        action=FeeHistoryAction.reset, actor=actor, at=now,
                    ))
                    changed += 1
            else:
                for field, value in defaults.items():
                    old_value = getattr(row, field)
                    if _same(old_value, value):
                        continue
                    setattr(row, field, value)
                    db.add(self._history_row(
                        tier=tier, currency=currency, field=field, old_value=old_value, new_value=value,
                        action=FeeHistoryAction.reset, actor=actor, at=now,
                    ))
                    changed += 1
                row.updated_by = actor

            if not changed:
                db.add(self._history_row(
                    tier=tier, currency=currency, field="*", old_value=None, new_value=None,
                    action=FeeHistoryAction.reset, actor=actor, at=now,
                ))
            rows.append(row)

        AuditService().record(
            db,
            actor_id=actor,
            actor_role="admin",
            subject_type="fee_schedule",
            subject_id=tier,
            action=AuditAction.FEE_TIER_RESET,
            payload_summary={"tier": tier, "currencies": list(DEFAULT_CURRENCY_RATES)},
            request_id=request_id,
        )
        db.commit()
        for r in rows:
            db.refresh(r)

        logger.info("fee tier reset", extra={"tier": tier, "actor": actor, "request_id": request_id})
        return rows

    def seed_defaults(self, db: Session) -> int:
        """Insert missing default entries. Idempotent; returns rows created."""
        created = 0
        for tier in TIER_DEFAULTS_USD:
            for currency in DEFAULT_CURRENCY_RATES:
                if self.find(db, tier=tier, currency=currency):
                    continue
                db.add(FeeSchedule(tier=tier, currency=currency, updated_by="seed", **default_values(tier, currency)))
                created += 1
        db.commit()
        return created

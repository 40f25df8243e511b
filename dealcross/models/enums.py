#dealcross/models/enums.py
from __future__ import annotations
from enum import Enum


class EscrowStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    funded = "funded"
    in_progress = "in_progress"
    delivered = "delivered"
    inspection_pending = "inspection_pending"
    inspection_passed = "inspection_passed"
    inspection_failed = "inspection_failed"
    disputed = "disputed"
    completed = "completed"
    paid_out = "paid_out"
    refunded = "refunded"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_STATUSES = frozenset(
    {
        EscrowStatus.completed,
        EscrowStatus.paid_out,
        EscrowStatus.refunded,
        EscrowStatus.cancelled,
        EscrowStatus.expired,
    }
)


class EscrowAction(str, Enum):
    create = "create"
    accept = "accept"
    fund = "fund"
    start = "start"
    deliver = "deliver"
    begin_inspection = "begin_inspection"
    pass_inspection = "pass"
    fail_inspection = "fail"
    confirm = "confirm"
    raise_dispute = "raise_dispute"
    resolve = "resolve"
    payout = "payout"
    cancel = "cancel"
    expire = "expire"
    release_milestones = "release_milestones"


class MilestoneStatus(str, Enum):
    pending = "pending"
    submitted = "submitted"
    approved = "approved"
    rejected = "rejected"


# timeline-only actions; they never change Escrow.status
class MilestoneEvent(str, Enum):
    added = "milestone_added"
    submitted = "milestone_submitted"
    approved = "milestone_approved"
    rejected = "milestone_rejected"


class ActorRole(str, Enum):
    buyer = "buyer"
    seller = "seller"
    arbitrator = "arbitrator"
    system = "system"


class UserRole(str, Enum):
    user = "user"
    admin = "admin"


class AdminRole(str, Enum):
    master = "master"
    admin = "admin"


class AdminPermission(str, Enum):
    view_transactions = "view_transactions"
    manage_disputes = "manage_disputes"
    manage_fees = "manage_fees"
    verify_users = "verify_users"


class Tier(str, Enum):
    starter = "starter"
    growth = "growth"
    enterprise = "enterprise"
    api = "api"


FIAT_CURRENCIES = ("USD", "EUR", "GBP", "NGN", "KES", "GHS", "ZAR", "INR", "CNY", "JPY", "CAD", "AUD")
CRYPTO_CURRENCIES = ("BTC", "ETH", "USDT", "USDC", "BNB", "MATIC")
STABLECOINS = ("USDT", "USDC")
# currencies an escrow may be opened in; each has a seeded fee schedule
SUPPORTED_CURRENCIES = FIAT_CURRENCIES + STABLECOINS


class EscrowCategory(str, Enum):
    goods = "goods"
    services = "services"
    digital = "digital"
    real_estate = "real_estate"
    vehicle = "vehicle"
    other = "other"


class TransactionType(str, Enum):
    custom = "custom"
    physical_goods = "physical_goods"
    digital_goods = "digital_goods"
    services = "services"
    freelance = "freelance"
    real_estate = "real_estate"
    vehicle = "vehicle"
    domain_transfer = "domain_transfer"
    business_sale = "business_sale"
    milestone_based = "milestone_based"
    cryptocurrency = "cryptocurrency"
    intellectual_property = "intellectual_property"
    subscription = "subscription"


class DisputeReason(str, Enum):
    non_delivery = "non_delivery"
    item_not_as_described = "item_not_as_described"
    unauthorized_transaction = "unauthorized_transaction"
    seller_not_responding = "seller_not_responding"
    buyer_not_responding = "buyer_not_responding"
    other = "other"


class DisputeStatus(str, Enum):
    open = "open"
    under_review = "under_review"
    resolved = "resolved"


class DisputeWinner(str, Enum):
    buyer = "buyer"
    seller = "seller"


class FeeField(str, Enum):
    buyer_fee_rate = "buyer_fee_rate"
    seller_fee_rate = "seller_fee_rate"
    monthly_cost = "monthly_cost"
    setup_fee = "setup_fee"
    max_transaction_amount = "max_transaction_amount"
    max_transactions_per_month = "max_transactions_per_month"


class FeeHistoryAction(str, Enum):
    update = "update"
    reset = "reset"

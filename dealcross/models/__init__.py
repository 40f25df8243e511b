from dealcross.models.user import User
from dealcross.models.escrow import Escrow, EscrowTimelineEntry, EscrowMilestone
from dealcross.models.dispute import Dispute
from dealcross.models.fee_schedule import FeeSchedule, FeeHistoryEntry
from dealcross.models.audit_log import AuditLogRecord
from dealcross.models.idempotency_key import IdempotencyKeyRecord

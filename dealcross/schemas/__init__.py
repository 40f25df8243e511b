from dealcross.schemas.primitives import ok
from dealcross.schemas.auth import LoginRequest, TokenResponse, MeResponse
from dealcross.schemas.escrow import (
    CanCreateOut,
    DashboardStatsOut,
    EscrowCreateRequest,
    EscrowOut,
    EventFeedOut,
    MilestoneAddRequest,
    MilestoneRejectRequest,
    TimelineEventOut,
)
from dealcross.schemas.dispute import DisputeCreateRequest, DisputeResolveRequest, DisputeOut
from dealcross.schemas.fees import FeeUpdateRequest, FeeScheduleOut, FeeHistoryOut, FeePreviewOut

from fastapi import APIRouter

from dealcross.api.v1.health import router as health_router
from dealcross.api.v1.auth import router as auth_router
from dealcross.api.v1.escrow import router as escrow_router
from dealcross.api.v1.admin.disputes import router as admin_disputes_router
from dealcross.api.v1.admin.fees import router as admin_fees_router
from dealcross.api.v1.admin.operations import router as admin_operations_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM / CORE
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(auth_router, tags=["auth"])

# ------------------------------------------------------------------
# ESCROW
# ------------------------------------------------------------------
v1_router.include_router(escrow_router, tags=["escrow"])

# ------------------------------------------------------------------
# ADMIN
# ------------------------------------------------------------------
v1_router.include_router(admin_disputes_router)
v1_router.include_router(admin_fees_router)
v1_router.include_router(admin_operations_router)

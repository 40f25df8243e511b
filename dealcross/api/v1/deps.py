# dealcross/api/v1/deps.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from dealcross.services.dispute_service import DisputeService
from dealcross.services.escrow_service import EscrowService
from dealcross.services.lifecycle_service import LifecycleService
from dealcross.services.notification_service import Notifier, get_notifier
from dealcross.services.sweep_service import SweepService


def request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def get_escrow_service(notifier: Notifier = Depends(get_notifier)) -> EscrowService:
    return EscrowService(notifier=notifier)


def get_dispute_service(notifier: Notifier = Depends(get_notifier)) -> DisputeService:
    return DisputeService(lifecycle=LifecycleService(), notifier=notifier)


def get_sweep_service(notifier: Notifier = Depends(get_notifier)) -> SweepService:
    return SweepService(notifier=notifier)

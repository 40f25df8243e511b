from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


class Notifier:
    """
    Outbound notification collaborator.

    Delivery (email, push, in-app) is owned by another system; this default
    implementation only logs. Tests swap in RecordingNotifier.
    """

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        logger.info("notification", extra={"user_id": user_id, "kind": kind, "payload": payload})

    def notify_parties(self, escrow, kind: str, payload: Dict[str, Any]) -> None:
        for uid in (escrow.buyer_id, escrow.seller_id):
            try:
                self.notify(str(uid), kind, payload)
            except Exception:
                # a failed notification never undoes a committed state change
                logger.exception("notification failed", extra={"user_id": str(uid), "kind": kind})


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, kind, payload))


def get_notifier() -> Notifier:
    return Notifier()

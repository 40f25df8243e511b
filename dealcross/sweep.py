# dealcross/sweep.py
"""
Apply deadline-driven transitions once and exit.

    python -m dealcross.sweep

Meant to be run by cron / a scheduler every few minutes.
"""
from __future__ import annotations

import json
import logging

from dealcross.core.config import get_settings
from dealcross.core.logging import configure_logging
from dealcross.db.session import SessionLocal
from dealcross.services.sweep_service import SweepService

logger = logging.getLogger("dealcross.sweep")


def main() -> int:
    configure_logging(get_settings())
    db = SessionLocal()
    try:
        counts = SweepService().run_once(db)
    finally:
        db.close()
    print(json.dumps(counts))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

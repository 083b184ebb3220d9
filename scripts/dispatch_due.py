"""
Daily job: move the units of confirmed bookings whose rental has started out of stock.

Bookings whose units are still out on an earlier rental are reported and left
CONFIRMED; the next run picks them up again.

Usage:
  python scripts/dispatch_due.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("rental.dispatch_due")


def run() -> int:
    from app.rental import create_app
    from app.rental.db import session_scope
    from app.rental.modules.bookings.service import dispatch_due_bookings

    app = create_app()
    with session_scope(app) as s:
        results = dispatch_due_bookings(s)

    failed = [r for r in results if not r["dispatched"]]
    for r in results:
        if r["dispatched"]:
            logger.info("Booking %s dispatched", r["booking_number"])
        else:
            logger.warning("Booking %s not dispatched: %s", r["booking_number"], r["error"])
    logger.info("Dispatch run done: %d dispatched, %d pending", len(results) - len(failed), len(failed))
    return 1 if failed else 0


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(run())


if __name__ == "__main__":
    main()

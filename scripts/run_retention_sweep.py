#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paydesk.config import Settings
from paydesk.desk import build_desk
from paydesk.domain import utcnow
from paydesk.retention import run_retention_sweep
from paydesk.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire unpaid draft cases older than the retention window")
    parser.add_argument(
        "--max-age-hours",
        type=int,
        default=0,
        help="override PAYDESK_DRAFT_MAX_AGE_HOURS (0 keeps the configured value)",
    )
    parser.add_argument("--relay", action="store_true", help="relay outbox events after the sweep")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = Settings.from_env()
    desk = build_desk(store=store, settings=settings)
    hours = args.max_age_hours if args.max_age_hours > 0 else settings.draft_max_age_hours
    result = run_retention_sweep(
        store=desk.store,
        lifecycle=desk.lifecycle,
        now=utcnow(),
        max_age=timedelta(hours=hours),
    )
    if args.relay:
        result["relay"] = desk.relay.relay()
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if not result["errors"] else 2


if __name__ == "__main__":
    raise SystemExit(main())

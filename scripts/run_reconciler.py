#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import sys
import time

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assessflow.main import reconciler, settings


def main() -> int:
    parser = argparse.ArgumentParser(description="Run scheduled consistency passes over jobs, results and the DLQ.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=1,
        help="Number of passes (0 means run forever).",
    )
    parser.add_argument(
        "--interval-s",
        type=float,
        default=settings.reconcile_interval_ms / 1000.0,
        help="Seconds between passes.",
    )
    parser.add_argument(
        "--purge-days",
        type=int,
        default=0,
        help="Also purge terminal jobs older than N days (0 disables).",
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    passes = 0
    while True:
        summary = reconciler.run_scheduled_pass()
        if args.purge_days > 0:
            summary["purge"] = reconciler.purge_expired_jobs(days_old=args.purge_days)
        print(json.dumps({"success": True, "pass": passes + 1, "summary": summary}, ensure_ascii=True))
        passes += 1
        if args.iterations > 0 and passes >= args.iterations:
            return 0
        try:
            time.sleep(max(0.0, args.interval_s))
        except KeyboardInterrupt:
            return 130


if __name__ == "__main__":
    raise SystemExit(main())

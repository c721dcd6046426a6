#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assessflow.main import ai_client, notifier, queue_backend
from assessflow.store import store
from assessflow.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Consume queued assessment analysis jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    runtime = create_worker_runtime_from_env(
        store=store,
        queue_backend=queue_backend,
        ai_client=ai_client,
        notifier=notifier,
    )
    try:
        stats = runtime.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    except KeyboardInterrupt:
        return 130
    finally:
        ai_client.close()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

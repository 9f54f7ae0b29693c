"""Command line entry point.

Usage::

    python -m email_pipeline init-db
    python -m email_pipeline cron      # one orchestrator pass, for crontab
    python -m email_pipeline health
    python -m email_pipeline serve --port 8000
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from email_pipeline.errors import ConfigurationError

LOGGER = logging.getLogger("email_pipeline")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="email_pipeline", description=__doc__.split("\n")[0])
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="root log level (default $LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="create missing tables")
    sub.add_parser("cron", help="run every orchestrator step once")
    sub.add_parser("health", help="print the system health summary")
    serve = sub.add_parser("serve", help="run the tracking HTTP server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from email_pipeline.app import build_pipeline

    try:
        pipeline = build_pipeline()
    except ConfigurationError as exc:
        LOGGER.error("%s", exc)
        return 2

    if args.command == "init-db":
        return 0

    if args.command == "cron":
        results = pipeline.cron.run()
        for r in results:
            print(json.dumps({"job": r.job, "success": r.success,
                              "duration": round(r.duration, 3), "details": r.details},
                             default=str))
        return 0 if all(r.success for r in results) else 1

    if args.command == "health":
        print(json.dumps(pipeline.cron.system_health(), indent=2))
        return 0

    import uvicorn

    from email_pipeline.tracking.server import create_app

    uvicorn.run(create_app(pipeline), host=args.host, port=args.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())

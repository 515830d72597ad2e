#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docpipe.ai_client import get_provider_info
from docpipe.services import build_services_from_env

logger = logging.getLogger("docpipe.worker")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident pipeline worker loop for all six stages.")
    parser.add_argument(
        "--seconds",
        type=float,
        default=0,
        help="Stop after N seconds (0 means run forever).",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process every due job once and exit.",
    )
    args = parser.parse_args()

    services = build_services_from_env()
    logging.basicConfig(
        level=services.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not services.settings.mock_llm_enabled:
        logger.info("llm provider: %s", get_provider_info())
    runtime = services.build_runtime()
    if args.drain:
        stats = asyncio.run(runtime.drain())
    else:
        run_for = args.seconds if args.seconds > 0 else None
        stats = asyncio.run(runtime.run_forever(run_for_seconds=run_for))
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

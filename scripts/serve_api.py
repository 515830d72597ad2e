#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import uvicorn

from docpipe.api import create_app
from docpipe.services import build_services_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the internal pipeline ops API.")
    parser.add_argument("--host", default=os.getenv("DOCPIPE_API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("DOCPIPE_API_PORT", "8080")))
    args = parser.parse_args()

    services = build_services_from_env()
    logging.basicConfig(
        level=services.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(services), host=args.host, port=args.port, log_level=services.settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

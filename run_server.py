#!/usr/bin/env python
"""
Server Entry Point

Starts the rollup API and engine.
Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py

    Or with Gunicorn:
    gunicorn engagement_rollups.main:app -c gunicorn.conf.py

The engine owns its shards in-process, so one server process runs one
engine; scale by partitioning the input topics, not by adding workers.
"""

import argparse
import os
import subprocess
import sys
from pathlib import Path

import uvicorn

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))


def run_dev_server(port: int):
    """Run development server with auto-reload."""
    uvicorn.run(
        "engagement_rollups.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["engagement_rollups"],
        log_level="debug",
        access_log=True,
    )


def run_prod_server(port: int):
    """Run production server with Uvicorn directly."""
    uvicorn.run(
        "engagement_rollups.main:app",
        host="0.0.0.0",
        port=port,
        workers=1,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=True,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
        date_header=True,
    )


def run_gunicorn():
    """Run with Gunicorn."""
    subprocess.run(["gunicorn", "engagement_rollups.main:app", "-c", "gunicorn.conf.py"])


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Engagement Rollups API Server")
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Run in development mode with auto-reload"
    )
    parser.add_argument(
        "--gunicorn",
        action="store_true",
        help="Run with Gunicorn (production)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", 8000)),
        help="Port to run on (default: 8000)"
    )

    args = parser.parse_args()

    if args.dev:
        print("🚀 Starting development server...")
        run_dev_server(args.port)
    elif args.gunicorn:
        print("🚀 Starting production server with Gunicorn...")
        run_gunicorn()
    else:
        print("🚀 Starting production server with Uvicorn...")
        run_prod_server(args.port)

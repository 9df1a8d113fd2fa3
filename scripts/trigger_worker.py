#!/usr/bin/env python3
"""
Trigger Worker — start pull-worker runs on a deployment from the shell.

Usage:
    python scripts/trigger_worker.py                         # one run against PUBLIC_BASE_URL
    python scripts/trigger_worker.py --base-url https://relay.example.com --key $WORKER_SECRET_KEY
    python scripts/trigger_worker.py --drain                 # repeat until the queue is empty
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(base_url: str, key: str, source: str, drain: bool, max_runs: int) -> int:
    from core.trigger import HttpWorkerTrigger

    trigger = HttpWorkerTrigger(base_url, key)
    try:
        for run_no in range(1, max_runs + 1):
            result = await trigger.trigger(source=source)
            print(json.dumps({"run": run_no, **result.to_dict()}, indent=2))
            if not result.triggered:
                return 1
            remaining = (result.response or {}).get("remaining") or 0
            if not drain or remaining <= 0:
                return 0
        print(f"Stopped after {max_runs} runs", file=sys.stderr)
        return 0
    finally:
        await trigger.close()


def main():
    from config.logging_conf import configure_logging
    from config.settings import load_settings

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)

    parser = argparse.ArgumentParser(description="Trigger the queue pull worker")
    parser.add_argument("--base-url", default=settings.public_base_url,
                        help="Deployment base URL (default: PUBLIC_BASE_URL)")
    parser.add_argument("--key", default=settings.worker_secret,
                        help="Shared worker secret (default: WORKER_SECRET_KEY)")
    parser.add_argument("--source", default="cli", help="Value sent as X-Trigger-Source")
    parser.add_argument("--drain", action="store_true", help="Keep triggering while jobs remain")
    parser.add_argument("--max-runs", type=int, default=20)
    args = parser.parse_args()

    if not args.key:
        parser.error("no worker secret: pass --key or set WORKER_SECRET_KEY")

    sys.exit(asyncio.run(run(args.base_url, args.key, args.source, args.drain, args.max_runs)))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Run sync cycles once, outside the web service (cron-style harness).

Usage:
  python -m timebridge.scripts.run_cycle discovery
  python -m timebridge.scripts.run_cycle refresh posting
  python -m timebridge.scripts.run_cycle all --json
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from timebridge import config
from timebridge.clients.jira import JiraClient
from timebridge.clients.platform import PlatformClient
from timebridge.db import connection, migrations
from timebridge.db.factory import get_identity_store
from timebridge.errors import ConfigurationError, CycleError
from timebridge.sync.factory import build_reconciler

_CYCLES = ("discovery", "refresh", "posting")


async def _run(cycles: list[str], as_json: bool) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    tracker = JiraClient(
        config.JIRA_BASE_URL,
        config.JIRA_EMAIL,
        config.JIRA_API_TOKEN,
        timeout=config.REQUEST_TIMEOUT_SECONDS,
        jql_timezone=config.TIMEZONE,
    )
    platform = PlatformClient(config.PLATFORM_API_URL, config.PLATFORM_API_KEY, timeout=config.REQUEST_TIMEOUT_SECONDS)
    reconciler = build_reconciler(get_identity_store(db), tracker, platform)
    runners = {
        "discovery": reconciler.run_discovery_cycle,
        "refresh": reconciler.run_refresh_cycle,
        "posting": reconciler.run_posting_cycle,
    }

    exit_code = 0
    try:
        for name in cycles:
            try:
                summary = await runners[name](trigger="cli")
            except CycleError as exc:
                print(f"{name}: failed ({exc})")
                exit_code = 1
                continue
            if as_json:
                print(json.dumps(summary.model_dump(mode="json"), indent=2))
            else:
                print(
                    f"{name}: status={summary.status} processed={summary.processed} "
                    f"failed={summary.failed} skipped={summary.skipped} "
                    f"retrying={summary.retrying} cursor={summary.cursor or '-'}"
                )
    finally:
        await tracker.close()
        await platform.close()
        await connection.close_connection()
    return exit_code


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("cycles", nargs="+", choices=[*_CYCLES, "all"], help="Cycles to run, in order")
    parser.add_argument("--json", action="store_true", help="Print full cycle summaries as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    try:
        config.require_valid_settings()
    except ConfigurationError as exc:
        print(str(exc))
        return 2

    cycles = list(_CYCLES) if "all" in args.cycles else args.cycles
    return asyncio.run(_run(cycles, args.json))


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""CLI script to run one reconciliation pass between the CRM stores.

Usage:
    uv run python scripts/run_sync.py --direction partner_to_primary
    uv run python scripts/run_sync.py --direction primary_to_partner --input snapshot.json
    uv run python scripts/run_sync.py --direction partner_to_primary --deadline 60 --init-db

Reads PRIMARY_DATABASE_URL, PARTNER_API_URL and PARTNER_API_KEY from the
environment or .env file. A push reads the primary store's collections from
the database unless --input points at a JSON snapshot of the form
{"contact": [...], "project": [...], ...}. The run report is printed as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.crm_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(direction: str, input_path: str | None, deadline: float | None, init: bool) -> int:
    """Wire settings to connectors and run the engine once."""
    from src.crm_sync.config import get_settings
    from src.crm_sync.core.database import close_db, get_engine, init_db
    from src.crm_sync.core.logging import configure_structlog
    from src.crm_sync.sync import (
        Direction,
        EntityType,
        PostgresConnector,
        PulseConnector,
        ReconciliationEngine,
        RunStatus,
    )

    configure_structlog()
    settings = get_settings()
    direction = Direction.parse(direction)

    if not settings.PARTNER_API_URL:
        print("PARTNER_API_URL is not set", file=sys.stderr)
        return 2

    if init:
        await init_db()

    primary = PostgresConnector(get_engine(), name=settings.PRIMARY_STORE_NAME)
    partner = PulseConnector(
        settings.PARTNER_API_URL,
        settings.PARTNER_API_KEY,
        name=settings.PARTNER_STORE_NAME,
        page_size=settings.PARTNER_PAGE_SIZE,
        timeout=settings.PARTNER_TIMEOUT_SECONDS,
    )
    engine = ReconciliationEngine(primary, partner, settings)

    try:
        collections = None
        if direction == Direction.PRIMARY_TO_PARTNER:
            if input_path:
                with open(input_path, encoding="utf-8") as fh:
                    collections = json.load(fh)
            else:
                collections = {et: await primary.fetch_all(et) for et in EntityType}

        report = await engine.run(direction, collections, deadline)
        print(report.model_dump_json(indent=2))
    finally:
        await partner.close()
        await close_db()

    return 1 if report.status == RunStatus.FAILED else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one CRM reconciliation pass")
    parser.add_argument(
        "--direction",
        required=True,
        choices=["primary_to_partner", "partner_to_primary"],
        help="Which store is the source of the run",
    )
    parser.add_argument("--input", default=None, help="JSON snapshot of primary rows to push")
    parser.add_argument("--deadline", type=float, default=None, help="Run deadline in seconds")
    parser.add_argument("--init-db", action="store_true", help="Create primary tables if missing")
    args = parser.parse_args()

    if args.input and args.direction != "primary_to_partner":
        parser.error("--input is only valid with --direction primary_to_partner")

    sys.exit(asyncio.run(run(args.direction, args.input, args.deadline, args.init_db)))


if __name__ == "__main__":
    main()

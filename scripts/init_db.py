"""
Create the database schema and optionally register sources from a JSON file.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --seed sources.json

The seed file holds a list of source definitions:
    [{"name": "ventas_csv", "type": "csv", "format": "csv",
      "connection": {"path": "/app/data/ventas.csv", "timestamp_field": "fecha"}}]
"""

import argparse
import asyncio
import json
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine, init_models
from core.exceptions import PersistenceError
from core.logging import setup_logging
from ingestion.registry import SourceAdmin
from schemas.source import SourceCreate

logger = logging.getLogger(__name__)


async def seed_sources(path: str) -> int:
    with open(path, encoding="utf-8") as handle:
        definitions = json.load(handle)

    created = 0
    async with async_session_maker() as session:
        admin = SourceAdmin(session)
        existing = {source.name for source in await admin.list(active_only=False)}
        for definition in definitions:
            payload = SourceCreate(**definition)
            if payload.name in existing:
                logger.info(f"Source '{payload.name}' already registered, skipping")
                continue
            try:
                await admin.create(payload)
                created += 1
            except PersistenceError as e:
                logger.error(f"Could not register source '{payload.name}': {e.message}")
    return created


async def init_database(seed: str = None):
    logger.info("Connecting to database...")
    try:
        await init_models(engine)
        logger.info("Tables created successfully.")
        if seed:
            created = await seed_sources(seed)
            logger.info(f"Registered {created} source(s) from {seed}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create tables and seed data sources")
    parser.add_argument("--seed", help="JSON file with source definitions")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(init_database(args.seed))

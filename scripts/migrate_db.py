#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn) -> list[str]:
    from sqlalchemy import text

    if conn.dialect.name == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, config_path: str = None):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    load_settings(config_path)

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine()
    defined = list(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
        print(f"Tables defined: {', '.join(defined)}")

        async with engine.connect() as conn:
            existing = await _existing_tables(conn)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(defined) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        tables = await _existing_tables(conn)
    print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, config_path=args.config))


if __name__ == "__main__":
    main()

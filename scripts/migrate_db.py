#!/usr/bin/env python3
"""
Database Migration — Create/verify the automation tables from SQLAlchemy models.

Usage:
    # Local (DATABASE_URL or database.url from settings.yaml):
    python scripts/migrate_db.py

    # Explicit URL:
    python scripts/migrate_db.py --url sqlite:///./automation.db

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text

    if engine.dialect.name == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    async with engine.connect() as conn:
        result = await conn.execute(text(query))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, url: str = None):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    load_settings()

    from database.session import close_db, configure_engine
    from database.models import Base

    engine = configure_engine(url)
    defined = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {str(engine.url).split('@')[-1]}")

    if check_only:
        existing = await _existing_tables(engine)
        print(f"Tables defined: {', '.join(sorted(defined))}")
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = defined - set(existing)
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

    existing = set(await _existing_tables(engine))
    print(f"Tables created/verified: {', '.join(sorted(defined & existing))}")
    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, url=args.url))


if __name__ == "__main__":
    main()

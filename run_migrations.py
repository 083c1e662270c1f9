#!/usr/bin/env python3
"""
Apply database migrations.
Usage: python3 run_migrations.py [revision]   (default: head)

Connection settings come from DB_USER / DB_PASSWORD / DB_HOST / DB_PORT / DB_NAME.
"""
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import OperationalError


def run_migrations(revision: str = "head"):
    """Upgrade the schema to ``revision`` with the storefront Alembic config."""
    ini_path = Path(__file__).parent / "storefront" / "alembic.ini"
    config = Config(str(ini_path))

    print(f"Applying migrations up to {revision}...")
    try:
        command.upgrade(config, revision)
    except OperationalError as e:
        print(f"Migration failed, database unreachable: {e}", file=sys.stderr)
        sys.exit(1)
    print("Migrations applied.")


if __name__ == "__main__":
    run_migrations(sys.argv[1] if len(sys.argv) > 1 else "head")

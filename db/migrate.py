#!/usr/bin/env python3
"""
Schema migration runner for the sensor telemetry database.

Usage:
    python3 db/migrate.py            apply pending migrations
    python3 db/migrate.py --status   list applied / pending migrations

Connects with DATABASE_URL, or PG_HOST/PG_PORT/PG_DB/PG_USER/PG_PASS when
no DSN is set. Applies db/migrations/*.sql in numeric filename order, each
in its own transaction, and records them in schema_migrations.
Exits non-zero on the first failure.
"""

import argparse
import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

logging.basicConfig(
    level=logging.INFO,
    format='{"ts":"%(asctime)s","level":"%(levelname)s","service":"migrate","msg":"%(message)s"}',
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("migrate")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     INTEGER     NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def get_connection():
    db_url = os.environ.get("DATABASE_URL")
    if db_url:
        return psycopg2.connect(db_url)
    password = os.environ.get("PG_PASS")
    if not password:
        logger.error("Neither DATABASE_URL nor PG_PASS is set")
        sys.exit(1)
    return psycopg2.connect(
        host=os.environ.get("PG_HOST", "localhost"),
        port=int(os.environ.get("PG_PORT", "5432")),
        dbname=os.environ.get("PG_DB", "sensor_pulse"),
        user=os.environ.get("PG_USER", "sensor"),
        password=password,
    )


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[int, Path]]:
    files: list[tuple[int, Path]] = []
    for file_path in directory.glob("*.sql"):
        match = re.match(r"^(\d+)_", file_path.name)
        if match:
            files.append((int(match.group(1)), file_path))
    return sorted(files)


def applied_versions(conn) -> set[int]:
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
        conn.commit()
        cur.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cur.fetchall()}


def run_migrations(conn, directory: Path = MIGRATIONS_DIR) -> int:
    conn.autocommit = False
    done = applied_versions(conn)
    migration_files = get_migration_files(directory)
    if not migration_files:
        logger.warning(f"No migration files found in {directory}")
        return 0

    applied_count = 0
    for version, file_path in migration_files:
        if version in done:
            logger.info(f"{file_path.name} already applied")
            continue

        logger.info(f"Applying {file_path.name}")
        try:
            with conn.cursor() as cur:
                cur.execute(file_path.read_text(encoding="utf-8"))
                cur.execute(
                    "INSERT INTO schema_migrations (version, filename) VALUES (%s, %s)",
                    (version, file_path.name),
                )
            conn.commit()
        except psycopg2.Error as exc:
            conn.rollback()
            logger.error(f"Migration {file_path.name} failed: {exc}")
            sys.exit(1)
        applied_count += 1

    return applied_count


def print_status(conn, directory: Path = MIGRATIONS_DIR) -> None:
    done = applied_versions(conn)
    for version, file_path in get_migration_files(directory):
        state = "applied" if version in done else "pending"
        print(f"{state:8} {file_path.name}")


def main():
    parser = argparse.ArgumentParser(description="Apply database migrations")
    parser.add_argument("--status", action="store_true", help="show migration state and exit")
    args = parser.parse_args()

    conn = get_connection()
    try:
        if args.status:
            print_status(conn)
            return
        applied = run_migrations(conn)
        logger.info(f"Migration complete, {applied} applied")
    finally:
        conn.close()


if __name__ == "__main__":
    main()

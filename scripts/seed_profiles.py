#!/usr/bin/env python3
"""
Load identity-provider profiles into PostgreSQL.

Reads a CSV file with the columns ``id,eligibility_key,name,role`` and
upserts each row into the ``profiles`` table. Eligibility keys are stored
trimmed and upper-cased, the same way election allow-lists store them.

Usage:
    python seed_profiles.py profiles.csv [--batch-size SIZE] [--replace]

Environment Variables:
    POSTGRES_HOST: PostgreSQL host (default: localhost)
    POSTGRES_PORT: PostgreSQL port (default: 5432)
    POSTGRES_DB: Database name (default: ballot_db)
    POSTGRES_USER: Database user (default: ballot_user)
    POSTGRES_PASSWORD: Database password (default: ballot_pass)
"""

import argparse
import csv
import os
import sys
from pathlib import Path
from typing import Dict, Generator, Optional

import psycopg2
from psycopg2.extras import execute_values
from tqdm import tqdm

from ballot_services.shared import ProfileRole, normalize_eligibility_key

UPSERT_SQL = """
INSERT INTO profiles (id, eligibility_key, name, role)
VALUES %s
ON CONFLICT (id) DO UPDATE SET
    eligibility_key = EXCLUDED.eligibility_key,
    name = EXCLUDED.name,
    role = EXCLUDED.role
"""

ROLES = {role.value for role in ProfileRole}


def parse_row(row: Dict[str, str]) -> Optional[tuple]:
    """
    Turn one CSV row into a profiles tuple.

    Returns:
        tuple: (id, eligibility_key, name, role), or None if the row is unusable
    """
    voter_id = (row.get('id') or '').strip()
    key = normalize_eligibility_key(row.get('eligibility_key'))
    if not voter_id or not key:
        return None

    name = (row.get('name') or '').strip() or None
    role = (row.get('role') or '').strip().lower() or ProfileRole.VOTER.value
    if role not in ROLES:
        return None
    return voter_id, key, name, role


def read_profiles(csv_path: Path, stats: Dict[str, int]) -> Generator[tuple, None, None]:
    """
    Read profile rows from a CSV file.

    Yields:
        tuple: Parsed profile
    """
    with open(csv_path, newline='') as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            profile = parse_row(row)
            if profile is None:
                print(f"✗ Skipping line {line_no}: missing id/eligibility_key or unknown role", file=sys.stderr)
                stats['skipped'] += 1
                continue
            yield profile


def count_rows(csv_path: Path) -> int:
    with open(csv_path, newline='') as f:
        return sum(1 for _ in csv.DictReader(f))


def connect():
    """Connect to PostgreSQL from environment variables."""
    return psycopg2.connect(
        host=os.getenv('POSTGRES_HOST', 'localhost'),
        port=int(os.getenv('POSTGRES_PORT', '5432')),
        dbname=os.getenv('POSTGRES_DB', 'ballot_db'),
        user=os.getenv('POSTGRES_USER', 'ballot_user'),
        password=os.getenv('POSTGRES_PASSWORD', 'ballot_pass'),
        connect_timeout=5
    )


def load_profiles(conn, csv_path: Path, batch_size: int = 1000, replace: bool = False) -> Dict[str, int]:
    """
    Upsert every usable CSV row.

    Args:
        conn: psycopg2 connection
        csv_path: Profiles CSV file
        batch_size: Rows per INSERT statement
        replace: Delete profiles that are not referenced by any ballot first

    Returns:
        dict: Statistics about the load operation
    """
    stats = {'loaded': 0, 'skipped': 0}
    total = count_rows(csv_path)
    print(f"Profiles to load: {total:,}")

    with conn:
        with conn.cursor() as cursor:
            if replace:
                cursor.execute(
                    "DELETE FROM profiles p WHERE NOT EXISTS "
                    "(SELECT 1 FROM votes v WHERE v.voter_id = p.id)"
                )
                print(f"Removed {cursor.rowcount:,} existing profiles")

            # Keyed by id: one statement may not upsert the same row twice
            batch: Dict[str, tuple] = {}
            with tqdm(total=total, desc="Loading profiles", unit="profiles") as pbar:
                for profile in read_profiles(csv_path, stats):
                    batch[profile[0]] = profile
                    if len(batch) >= batch_size:
                        execute_values(cursor, UPSERT_SQL, list(batch.values()))
                        stats['loaded'] += len(batch)
                        pbar.update(len(batch))
                        batch = {}

                if batch:
                    execute_values(cursor, UPSERT_SQL, list(batch.values()))
                    stats['loaded'] += len(batch)
                    pbar.update(len(batch))

    print(f"\n✓ Load complete!")
    print(f"  Profiles loaded: {stats['loaded']:,}")
    if stats['skipped']:
        print(f"  Rows skipped: {stats['skipped']:,}")
    return stats


def main():
    parser = argparse.ArgumentParser(description="Load voter profiles into PostgreSQL")
    parser.add_argument('csv_path', type=Path, help="CSV file with id,eligibility_key,name,role columns")
    parser.add_argument('--batch-size', type=int, default=1000, help="Rows per INSERT (default: 1000)")
    parser.add_argument('--replace', action='store_true', help="Remove profiles without ballots before loading")
    args = parser.parse_args()

    if not args.csv_path.exists():
        print(f"✗ File does not exist: {args.csv_path}", file=sys.stderr)
        return 1

    try:
        conn = connect()
    except psycopg2.OperationalError as e:
        print(f"✗ Failed to connect to PostgreSQL: {e}", file=sys.stderr)
        return 1

    try:
        load_profiles(conn, args.csv_path, batch_size=args.batch_size, replace=args.replace)
    except psycopg2.Error as e:
        print(f"✗ Load failed, nothing was written: {e}", file=sys.stderr)
        return 1
    finally:
        conn.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())

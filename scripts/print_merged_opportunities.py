#!/usr/bin/env python3

import glob
import json
import os
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

# Path to search for .db files
PROJECT_ROOT = Path(__file__).resolve().parent.parent  # ../scripts → project root
DB_DIR = PROJECT_ROOT / "local" / "state"
DB_PATTERN = str(DB_DIR / "*.db")

MERGED_KEY = "opportunities"


def get_db_files() -> list[str]:
    return sorted(glob.glob(DB_PATTERN))


def get_latest_entries(db_path: str, limit: int = 15) -> list[dict]:
    """
    Newest `limit` records of the merged collection (kv key 'opportunities'),
    sorted by extractedAt DESC.
    """
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (MERGED_KEY,)).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        print(f"Error reading {db_path}: {e}", file=sys.stderr)
        return []
    if row is None:
        return []
    try:
        records = json.loads(row[0])
    except json.JSONDecodeError as e:
        print(f"Corrupt merged collection in {db_path}: {e}", file=sys.stderr)
        return []
    records = [r for r in records if isinstance(r, dict)]
    records.sort(key=lambda r: str(r.get("extractedAt") or ""), reverse=True)
    return records[:limit]


def format_timestamp(iso_str: str) -> str:
    """Convert ISO timestamp to readable local format."""
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except (TypeError, ValueError):
        return str(iso_str)


def main():
    if not os.path.exists(DB_DIR):
        print(f"Directory not found: {DB_DIR}")
        sys.exit(1)

    db_files = get_db_files()
    if not db_files:
        print(f"No .db files found in {DB_DIR}")
        return

    limit = 15
    if len(sys.argv) > 1:
        try:
            limit = int(sys.argv[1])
            if limit <= 0:
                raise ValueError
        except ValueError:
            print(f"Invalid limit: {sys.argv[1]}. Using default (15).", file=sys.stderr)
            limit = 15

    print(f"Found {len(db_files)} database(s). Showing last {limit} merged opportunities per DB.\n")

    for db_path in db_files:
        print("=" * 80)
        print(f"DATABASE: {os.path.basename(db_path)}")
        print(f"PATH: {db_path}")
        print("-" * 80)

        entries = get_latest_entries(db_path, limit)
        if not entries:
            print("  No merged opportunities found.")
            continue

        for i, rec in enumerate(entries, 1):
            saved = " [saved]" if rec.get("saved") else ""
            print(f"{i:2d}. [{format_timestamp(rec.get('extractedAt', ''))}] {rec.get('sourcePlatform', '?')}{saved}")
            print(f"     Title:    {rec.get('title', '')}")
            print(f"     Deadline: {rec.get('deadline') or '-'}")
            print(f"     URL:      {rec.get('url', '')}")
            print()

        print()


if __name__ == "__main__":
    main()

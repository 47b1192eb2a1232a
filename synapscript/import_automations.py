#!/usr/bin/env python3
"""
Import automations from a JSON export into the database.

Run this to seed a fresh install or to move automations between machines.

Usage:
    python -m synapscript.import_automations automations.json
    python -m synapscript.import_automations automations.json --db data/synapscript.db
"""

import json
import argparse
from pathlib import Path

from synapscript.models import Automation
from synapscript.runner.db import DEFAULT_DB_PATH, create_automation, get_automation, init_database, update_automation
from synapscript.runner.scheduler import humanize_cron, is_valid_cron


def import_automation(data: dict, db_path: Path) -> dict:
    """
    Insert or update one automation.

    Args:
        data: Automation record as exported
        db_path: Target database

    Returns:
        The stored automation record
    """
    automation = Automation.from_dict(data)
    existing = get_automation(automation.id, db_path) if data.get('id') else None

    if existing:
        print(f"  '{automation.name}' already exists, updating...")
        record = automation.to_dict()
        return update_automation(automation.id, record, db_path)

    print(f"  Creating '{automation.name}'")
    return create_automation(automation.to_dict(), db_path)


def main():
    """Import every automation in the given file."""
    parser = argparse.ArgumentParser(description='Import automations from JSON')
    parser.add_argument('file', type=Path, help='JSON file containing a list of automations')
    parser.add_argument('--db', type=Path, default=DEFAULT_DB_PATH,
                        help='Database path (default: %(default)s)')
    args = parser.parse_args()

    print("Initializing database...")
    init_database(args.db)

    automations = json.loads(args.file.read_text(encoding='utf-8'))
    if not isinstance(automations, list):
        parser.error("Expected a JSON list of automations")

    print(f"\n=== Importing {len(automations)} automations ===\n")

    imported = 0
    for data in automations:
        try:
            record = import_automation(data, args.db)
        except ValueError as e:
            print(f"  Skipped {data.get('name') or data.get('id')}: {e}")
            continue

        imported += 1
        cron = (record.get('trigger') or {}).get('cron_expression')
        if cron:
            status = humanize_cron(cron) if is_valid_cron(cron) else "invalid cron, will not be scheduled"
            print(f"    Schedule: {status}")

    print(f"\n=== Done: {imported}/{len(automations)} imported ===")
    print("\nRestart the server to arm new schedules.")


if __name__ == '__main__':
    main()

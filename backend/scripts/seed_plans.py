#!/usr/bin/env python3
"""
Load the plan catalog from a JSON file into the database.

Usage:
    # Load backend/plans.json
    python seed_plans.py

    # Load a specific file, validating only
    python seed_plans.py --file /path/to/plans.json --dry-run
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sellerhub.core.logging import setup_logging
from sellerhub.db.session import SessionLocal, init_db
from sellerhub.services.plan_catalog import PlanDataError, load_plans_file, upsert_plans

DEFAULT_PLANS_FILE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "plans.json")


def seed_plans(path: str, dry_run: bool = False):
    """Validate and upsert plans from a JSON file"""
    try:
        definitions = load_plans_file(path)
    except FileNotFoundError:
        print(f"❌ Plans file not found: {path}")
        return False
    except ValueError as e:
        print(f"❌ Invalid JSON in {path}: {e}")
        return False

    init_db()
    db = SessionLocal()
    try:
        specs = upsert_plans(definitions, db, commit=not dry_run)
        if dry_run:
            db.rollback()
            print(f"✅ {len(definitions)} plan(s) in {path} are valid (dry run, nothing written)")
            return True

        print(f"✅ Loaded {len(specs)} plan(s) from {path}")
        for spec in specs:
            print(f"   {spec.id}: {spec.name} ({spec.plan_type}) {spec.price} {spec.currency.upper()}, "
                  f"{spec.credits_granted} credits / {spec.duration_days} days, v{spec.version}")
        return True

    except PlanDataError as e:
        print(f"❌ Invalid plan data: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description='Load the plan catalog from JSON')
    parser.add_argument('--file', default=DEFAULT_PLANS_FILE, help='Path to plans JSON file')
    parser.add_argument('--dry-run', action='store_true', help='Validate without writing')
    args = parser.parse_args()

    setup_logging()
    success = seed_plans(args.file, dry_run=args.dry_run)
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()

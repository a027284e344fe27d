"""Database maintenance for the tracker.

Usage:
  python scripts/maintenance.py tables
  python scripts/maintenance.py migrate
  python scripts/maintenance.py recompute
Uses DATABASE_URL unless --database-url is given.
"""
import argparse

from sqlalchemy import inspect

from tracker_core.app.db import Database
from tracker_core.app.migrations import applied_versions, apply_migrations
from tracker_core.app.services.order_service import recompute_all_orders
from tracker_core.app.services.stock_service import recalc_coil_stock


def list_tables(database):
    tables = sorted(inspect(database.engine).get_table_names())
    print("Database Tables:")
    for t in tables:
        print(f"  - {t}")
    print(f"\nTotal: {len(tables)} tables")
    print("Migrations applied:", applied_versions(database.engine))
    return tables


def migrate(database):
    applied = apply_migrations(database.engine)
    print("Applied:", applied or "nothing, schema up to date")
    return applied


def recompute(database):
    apply_migrations(database.engine)
    db = database.session()
    try:
        orders = recompute_all_orders(db)
        coils = recalc_coil_stock(db)
        db.commit()
    finally:
        db.close()
    print(f"Recomputed {orders} orders, resynced {coils} coils")
    return orders, coils


COMMANDS = {"tables": list_tables, "migrate": migrate, "recompute": recompute}


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument('command', choices=sorted(COMMANDS))
    parser.add_argument('--database-url')
    args = parser.parse_args(argv)

    database = Database(args.database_url).open()
    try:
        return COMMANDS[args.command](database)
    finally:
        database.close()


if __name__ == '__main__':
    main()

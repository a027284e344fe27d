"""
Schema Migrations
=================
Ordered, versioned schema changes applied once at startup.

Each migration is idempotent: it inspects the live schema before altering it,
so running against a database that already has a column is harmless. Applied
versions are recorded in ``schema_migrations``.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Tuple

from sqlalchemy import inspect, select, text

from .db import Base
from . import models  # noqa: F401  registers tables on Base.metadata
from .models import SchemaMigration

logger = logging.getLogger(__name__)


def _add_columns(conn, table: str, columns: Dict[str, str]) -> None:
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing = {c["name"] for c in inspector.get_columns(table)}
    for name, ddl in columns.items():
        if name in existing:
            continue
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
        logger.info("Added column %s.%s", table, name)


def _create_tables(conn) -> None:
    Base.metadata.create_all(bind=conn)


def _order_targets(conn) -> None:
    _add_columns(conn, "orders", {
        "thickness_mm": "REAL",
        "op_size_mm": "REAL",
        "ordered_qty_pcs": "INTEGER",
        "ordered_weight_kg": "REAL",
        "fulfilled_qty_pcs": "INTEGER DEFAULT 0",
        "fulfilled_weight_kg": "REAL DEFAULT 0",
        "price_per_kg": "REAL",
        "notes": "TEXT",
    })


def _order_cancellation(conn) -> None:
    _add_columns(conn, "orders", {
        "cancelled_at": "DATETIME",
        "cancel_remarks": "TEXT",
    })


def _sale_order_links(conn) -> None:
    for table in ("circle_sales", "pl_sales", "coil_direct_sales", "scrap_sales"):
        _add_columns(conn, table, {"order_id": "INTEGER"})


def _scrap_sale_notes(conn) -> None:
    _add_columns(conn, "scrap_sales", {"notes": "TEXT"})


def _coil_purchase_price(conn) -> None:
    _add_columns(conn, "coils", {"purchase_price": "REAL"})
    _add_columns(conn, "coil_stock", {"purchase_price": "REAL"})


MIGRATIONS: List[Tuple[int, str, Callable]] = [
    (1, "create base tables", _create_tables),
    (2, "order targets and fulfillment columns", _order_targets),
    (3, "order cancellation columns", _order_cancellation),
    (4, "order link on every sale table", _sale_order_links),
    (5, "scrap sale notes", _scrap_sale_notes),
    (6, "coil purchase price", _coil_purchase_price),
]


def applied_versions(engine) -> List[int]:
    with engine.connect() as conn:
        if not inspect(conn).has_table(SchemaMigration.__tablename__):
            return []
        return sorted(conn.execute(select(SchemaMigration.version)).scalars())


def apply_migrations(engine) -> List[int]:
    """Apply every pending migration in version order.

    Returns the versions applied by this call (empty when up to date).
    """
    applied = []
    with engine.begin() as conn:
        SchemaMigration.__table__.create(bind=conn, checkfirst=True)
        done = set(conn.execute(select(SchemaMigration.version)).scalars())
        for version, description, migrate in MIGRATIONS:
            if version in done:
                continue
            logger.info("Applying migration %03d: %s", version, description)
            migrate(conn)
            conn.execute(
                SchemaMigration.__table__.insert().values(
                    version=version,
                    description=description,
                    applied_at=datetime.utcnow(),
                )
            )
            applied.append(version)
    if not applied:
        logger.debug("Schema up to date")
    return applied

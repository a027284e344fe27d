from sqlalchemy import create_engine, inspect, text

from tracker_core.app.migrations import MIGRATIONS, applied_versions, apply_migrations


def test_migrations_apply_once(db_url):
    engine = create_engine(db_url)
    all_versions = [m[0] for m in MIGRATIONS]
    assert apply_migrations(engine) == all_versions
    assert apply_migrations(engine) == []
    assert applied_versions(engine) == all_versions
    engine.dispose()


def test_migrations_upgrade_legacy_orders_table(db_url):
    engine = create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE orders (id INTEGER PRIMARY KEY, order_date DATE, order_by TEXT, company TEXT, grade TEXT, status TEXT NOT NULL, created_at DATETIME, updated_at DATETIME)"))
        conn.execute(text("INSERT INTO orders (id, company, status) VALUES (1, 'Acme', 'Pending')"))

    apply_migrations(engine)

    columns = {c["name"] for c in inspect(engine).get_columns("orders")}
    assert {"ordered_weight_kg", "fulfilled_weight_kg", "cancelled_at", "cancel_remarks"} <= columns
    with engine.connect() as conn:
        assert conn.execute(text("SELECT company FROM orders WHERE id = 1")).scalar() == "Acme"
    engine.dispose()


def test_startup_applies_migrations(client):
    res = client.get("/api/_health/db")
    assert res.status_code == 200
    assert res.json() == {"ok": True, "dialect": "sqlite"}
    assert client.get("/api/health").json() == {"ok": True}

import pytest
from fastapi.testclient import TestClient

from tracker_core.app.db import Database
from tracker_core.app.main import create_app
from tracker_core.app.migrations import apply_migrations


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{(tmp_path / 'tracker.db').as_posix()}"


@pytest.fixture
def client(db_url):
    app = create_app(db_url)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def database(db_url):
    database = Database(db_url, echo=False).open()
    apply_migrations(database.engine)
    yield database
    database.close()


@pytest.fixture
def db(database):
    session = database.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_coil(client):
    def _make(**overrides):
        payload = {
            "grade": "SS304",
            "thickness": 2.0,
            "width": 1250,
            "supplier": "Jindal",
            "purchase_weight_kg": 1000,
        }
        payload.update(overrides)
        res = client.post("/api/coils/purchase", json=payload)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def make_run(client):
    def _make(coil_id, **overrides):
        payload = {
            "coil_id": coil_id,
            "run_date": "2026-01-10",
            "operator": "Ravi",
            "net_weight_kg": 500,
            "op_size_mm": 200,
            "circle_weight_kg": 300,
            "qty": 30,
            "scrap_weight_kg": 50,
        }
        payload.update(overrides)
        res = client.post("/api/circle-runs", json=payload)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def make_order(client):
    def _make(**payload):
        res = client.post("/api/orders", json=payload)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def circle_stock(client, make_coil, make_run):
    """One coil cut into 300 kg / 30 pcs of 200 mm circles."""
    coil = make_coil(rn="0100")
    run = make_run(coil["id"])
    rows = client.get("/api/circle-stock").json()
    assert len(rows) == 1
    return {"coil": coil, "run": run, "stock": rows[0]}

import pytest

from tracker_core.app.services import CircleRunService, CoilService, PattaRunService, PlRunService, ValidationError


def test_circle_run_validation(client, make_coil):
    coil = make_coil(purchase_weight_kg=100)
    assert client.post("/api/circle-runs", json={"net_weight_kg": 10}).status_code == 400
    assert client.post("/api/circle-runs", json={"coil_id": 9999}).status_code == 404
    res = client.post("/api/circle-runs", json={"coil_id": coil["id"], "net_weight_kg": 101})
    assert res.status_code == 400
    assert "exceeds" in res.json()["detail"]


def test_circle_run_edit_rechecks_balance(client, make_coil, make_run):
    coil = make_coil(purchase_weight_kg=600)
    run = make_run(coil["id"], net_weight_kg=500)
    assert client.patch(f"/api/circle-runs/{run['id']}", json={"net_weight_kg": 600}).status_code == 200
    assert client.patch(f"/api/circle-runs/{run['id']}", json={"net_weight_kg": 601}).status_code == 400
    summary = client.get(f"/api/coils/{coil['id']}/summary").json()
    assert summary["balance_kg"] == 0


def test_circle_run_edit_updates_stock_in_place(client, circle_stock):
    run_id = circle_stock["run"]["id"]
    client.patch(f"/api/circle-runs/{run_id}", json={"circle_weight_kg": 280, "qty": 28})
    rows = client.get("/api/circle-stock").json()
    assert len(rows) == 1
    assert rows[0]["id"] == circle_stock["stock"]["id"]
    assert rows[0]["weight_kg"] == 280


def test_bulk_start_skips_existing_and_unknown(client, make_coil):
    a = make_coil()
    b = make_coil()
    payload = {"coil_ids": [a["id"], b["id"], 9999], "operator": "Ravi", "run_date": "2026-05-01"}
    body = client.post("/api/circle-runs/bulk-start", json=payload).json()
    assert body["started"] == 2
    assert body["skipped"] == 1
    assert body["skipped_ids"] == [9999]
    assert body["first_run_id"] == body["created_ids"][0]

    body = client.post("/api/circle-runs/bulk-start", json=payload).json()
    assert body["started"] == 0
    assert body["skipped"] == 3

    assert client.post("/api/circle-runs/bulk-start", json={"coil_ids": [], "operator": "Ravi"}).status_code == 400


def test_list_circle_runs_filters(client, make_coil, make_run):
    coil = make_coil(rn="0500")
    make_run(coil["id"], run_date="2026-01-01", net_weight_kg=100, operator="Ravi")
    make_run(coil["id"], run_date="2026-02-01", net_weight_kg=100, operator="Mohan")
    assert len(client.get("/api/circle-runs", params={"from": "2026-01-15"}).json()) == 1
    assert len(client.get("/api/circle-runs", params={"to": "2026-01-15"}).json()) == 1
    rows = client.get("/api/circle-runs", params={"operator": "Mohan"}).json()
    assert [r["operator"] for r in rows] == ["Mohan"]
    assert rows[0]["rn"] == "0500"


def test_run_delete_refused_while_stock_has_sales(client, circle_stock):
    run_id = circle_stock["run"]["id"]
    sale = client.post("/api/circle-sales", json={"stock_id": circle_stock["stock"]["id"], "sold_weight_kg": 10}).json()

    assert client.delete(f"/api/circle-runs/{run_id}").status_code == 409
    assert len(client.get("/api/circle-stock").json()) == 1

    client.delete(f"/api/circle-sales/{sale['id']}")
    assert client.delete(f"/api/circle-runs/{run_id}").status_code == 200
    assert client.get("/api/circle-stock").json() == []
    summary = client.get(f"/api/coils/{circle_stock['coil']['id']}/summary").json()
    assert summary["balance_kg"] == 1000


def test_clearing_circles_with_sales_is_a_conflict(client, circle_stock):
    client.post("/api/circle-sales", json={"stock_id": circle_stock["stock"]["id"], "sold_weight_kg": 10})
    res = client.patch(f"/api/circle-runs/{circle_stock['run']['id']}", json={"circle_weight_kg": 0})
    assert res.status_code == 409


def test_patta_output_creates_child_run(client, make_coil, make_run):
    coil = make_coil(rn="0600", grade="SS316")
    run = make_run(coil["id"], patta_size=50, patta_weight_kg=40)

    sources = client.get("/api/patta").json()
    assert [(s["source_id"], s["rn"]) for s in sources] == [(run["id"], "0600")]

    pattas = client.get("/api/patta-runs").json()
    assert len(pattas) == 1
    patta = pattas[0]
    assert patta["source_type"] == "circle"
    assert patta["patta_source_id"] == run["id"]
    assert patta["grade"] == "SS316"
    assert patta["source_ref"] == "0600"
    assert patta["net_weight_kg"] == 40

    res = client.patch(f"/api/patta-runs/{patta['id']}", json={"circle_weight_kg": 20, "qty": 4, "op_size_mm": 80})
    assert res.status_code == 200
    rows = client.get("/api/patta-stock").json()
    assert len(rows) == 1
    assert rows[0]["source_ref"] == "0600"
    assert rows[0]["grade"] == "SS316"
    assert rows[0]["size_mm"] == 80

    # clearing patta on the parent removes the child run and its stock
    client.patch(f"/api/circle-runs/{run['id']}", json={"patta_weight_kg": 0})
    assert client.get("/api/patta-runs").json() == []
    assert client.get("/api/patta-stock").json() == []


def test_patta_run_validation(client, circle_stock):
    assert client.post("/api/patta-runs", json={"source_type": "circle"}).status_code == 400
    assert client.post("/api/patta-runs", json={"source_type": "pl", "patta_source_id": 1}).status_code == 400
    assert client.post("/api/patta-runs", json={"source_type": "circle", "patta_source_id": 9999}).status_code == 404
    res = client.post("/api/patta-runs", json={"source_type": "circle", "patta_source_id": circle_stock["run"]["id"]})
    assert res.status_code == 201
    assert res.json()["grade"] == "SS304"


def test_pl_run_writes_circle_stock(client, circle_stock):
    run_id = circle_stock["run"]["id"]
    res = client.post("/api/pl-runs", json={
        "source_type": "circle", "pl_source_id": run_id,
        "circle_weight_kg": 10, "qty": 2, "op_size_mm": 60,
    })
    assert res.status_code == 201, res.text
    pl_run = res.json()

    rows = client.get("/api/circle-stock", params={"source_type": "pl"}).json()
    assert len(rows) == 1
    assert rows[0]["source_ref"] == f"PL-{pl_run['id']}"
    assert rows[0]["grade"] == "SS304"
    assert rows[0]["coil_id"] == circle_stock["coil"]["id"]

    listed = client.get("/api/pl-runs").json()
    assert listed[0]["source_ref"] == "0100"

    assert client.post("/api/pl-runs", json={"source_type": "pl", "pl_source_id": 9999}).status_code == 404
    assert client.delete(f"/api/pl-runs/{pl_run['id']}").status_code == 200
    assert client.get("/api/circle-stock", params={"source_type": "pl"}).json() == []


def test_circle_stock_views(client, circle_stock):
    client.post("/api/patta-runs", json={
        "source_type": "circle", "patta_source_id": circle_stock["run"]["id"],
        "circle_weight_kg": 12, "qty": 3, "op_size_mm": 90,
    })
    assert len(client.get("/api/circle-stock").json()) == 2
    assert len(client.get("/api/circle-stock-only").json()) == 2
    assert len(client.get("/api/patta-stock").json()) == 1
    assert len(client.get("/api/circle-stock", params={"source_type": "circle,patta"}).json()) == 2


@pytest.mark.parametrize("field,value", [
    ("net_weight_kg", -500),
    ("circle_weight_kg", -10),
    ("qty", -3),
    ("scrap_weight_kg", -5),
    ("patta_weight_kg", -20),
    ("pl_weight_kg", -20),
])
def test_negative_run_measures_are_rejected(client, make_coil, field, value):
    coil = make_coil(purchase_weight_kg=1000)
    res = client.post("/api/circle-runs", json={"coil_id": coil["id"], "net_weight_kg": 100, field: value})
    assert res.status_code == 400
    assert client.get("/api/circle-runs").json() == []
    assert client.get(f"/api/coils/{coil['id']}/summary").json()["balance_kg"] == 1000


def test_negative_measures_rejected_on_edit_and_child_runs(client, circle_stock):
    run_id = circle_stock["run"]["id"]
    assert client.patch(f"/api/circle-runs/{run_id}", json={"net_weight_kg": -1}).status_code == 400
    summary = client.get(f"/api/coils/{circle_stock['coil']['id']}/summary").json()
    assert summary["balance_kg"] == 500

    res = client.post("/api/patta-runs", json={"source_type": "circle", "patta_source_id": run_id, "net_weight_kg": -5})
    assert res.status_code == 400
    res = client.post("/api/pl-runs", json={"source_type": "circle", "pl_source_id": run_id, "qty": -2})
    assert res.status_code == 400


def test_run_services_refuse_negative_measures(db):
    coil = CoilService.purchase(db, {"rn": "0800", "grade": "SS304", "purchase_weight_kg": 300})
    with pytest.raises(ValidationError):
        CircleRunService.create(db, {"coil_id": coil.id, "net_weight_kg": -50})
    run = CircleRunService.create(db, {"coil_id": coil.id, "net_weight_kg": 50})
    with pytest.raises(ValidationError):
        CircleRunService.update(db, run.id, {"scrap_weight_kg": -1})
    with pytest.raises(ValidationError):
        PattaRunService.create(db, {"source_type": "circle", "patta_source_id": run.id, "circle_weight_kg": -4})
    with pytest.raises(ValidationError):
        PlRunService.create(db, {"source_type": "circle", "pl_source_id": run.id, "net_weight_kg": -4})

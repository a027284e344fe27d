import pytest

from tracker_core.app.services.report_service import safe_pct


def test_safe_pct():
    assert safe_pct(1, 3) == 33.33
    assert safe_pct(5, 0) is None
    assert safe_pct(5, None) is None


def test_yield_per_coil(client, make_coil, make_run):
    coil = make_coil(rn="0001")
    make_coil(rn="0002")
    run = make_run(coil["id"], net_weight_kg=500, circle_weight_kg=400, qty=40)

    rows = client.get("/api/yield").json()
    assert [r["rn"] for r in rows] == ["0001"]
    row = rows[0]
    assert row["circle_yield_pct"] == 80.0
    assert row["patta_yield_pct"] is None
    assert row["total_yield_pct"] == 80.0

    client.post("/api/patta-runs", json={
        "source_type": "circle", "patta_source_id": run["id"],
        "net_weight_kg": 50, "circle_weight_kg": 25, "qty": 5,
    })
    row = client.get("/api/yield").json()[0]
    assert row["patta_yield_pct"] == 50.0
    assert row["total_yield_pct"] == 85.0


def test_dashboard_totals(client, make_coil, make_run):
    coil = make_coil()
    make_run(coil["id"], operator="Ravi", net_weight_kg=500, circle_weight_kg=400, qty=40,
             scrap_weight_kg=20, patta_size=50, patta_weight_kg=30)
    body = client.get("/api/dashboard").json()

    # the patta child run carries 30 kg of net input
    assert body["totals"] == {"circles_kg": 400, "net_kg": 530, "scrap_kg": 20, "patta_kg": 30}
    ravi = next(r for r in body["byOperator"] if r["operator"] == "Ravi")
    assert ravi["circles_kg"] == 400
    assert ravi["yield_pct"] == pytest.approx(75.47)
    assert [r["source_type"] for r in body["recent"]] == ["patta", "circle"]


def test_profitability_lists_only_fully_sold_coils(client, make_coil):
    sold = make_coil(rn="0001", purchase_weight_kg=100, purchase_price=50)
    part = make_coil(rn="0002", purchase_weight_kg=100, purchase_price=50)
    client.post(f"/api/coils/{sold['id']}/sell-direct", json={"sold_weight_kg": 100, "price_per_kg": 70})
    client.post(f"/api/coils/{part['id']}/sell-direct", json={"sold_weight_kg": 60, "price_per_kg": 70})

    rows = client.get("/api/dashboard/profitability").json()
    assert len(rows) == 1
    row = rows[0]
    assert row["coil_no"] == "0001"
    assert row["purchase_cost"] == 5000
    assert row["total_revenue"] == 7000
    assert row["profit"] == 2000
    assert row["balance_kg"] == 0


def test_profitability_follows_lineage(client, make_coil, make_run):
    coil = make_coil(rn="0003", purchase_weight_kg=100, purchase_price=40)
    make_run(coil["id"], net_weight_kg=100, circle_weight_kg=80, qty=8, scrap_weight_kg=20)
    stock_id = client.get("/api/circle-stock").json()[0]["id"]
    client.post("/api/circle-sales", json={"stock_id": stock_id, "sold_weight_kg": 80, "price_per_kg": 60})
    assert client.get("/api/dashboard/profitability").json() == []

    client.post("/api/scrap-sales", json={"rn": "0003", "source_type": "circle", "weight_kg": 20, "price_per_kg": 10})
    rows = client.get("/api/dashboard/profitability").json()
    assert [r["coil_no"] for r in rows] == ["0003"]
    assert rows[0]["total_revenue"] == pytest.approx(80 * 60 + 20 * 10)

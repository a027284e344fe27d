import pytest

from tracker_core.app.models import CircleStock, PlStock
from tracker_core.app.services import CircleRunService, CircleSaleService, CoilService, PlSaleService, ValidationError


def _available(client, stock_id):
    row = next(r for r in client.get("/api/circle-stock").json() if r["id"] == stock_id)
    return row["available_weight_kg"], row["available_qty"]


def test_undoing_a_sale_restores_availability(client, circle_stock):
    stock_id = circle_stock["stock"]["id"]
    assert _available(client, stock_id) == (300, 30)

    res = client.post("/api/circle-sales", json={"stock_id": stock_id, "sold_weight_kg": 100, "sold_qty": 10})
    assert res.status_code == 201
    assert _available(client, stock_id) == (200, 20)

    client.delete(f"/api/circle-sales/{res.json()['id']}")
    assert _available(client, stock_id) == (300, 30)


@pytest.mark.parametrize("payload,status", [
    ({"sold_weight_kg": 10}, 400),
    ({"stock_id": "STOCK", "sold_weight_kg": 0}, 400),
    ({"stock_id": 9999, "sold_weight_kg": 10}, 404),
    ({"stock_id": "STOCK", "sold_weight_kg": 301}, 400),
    ({"stock_id": "STOCK", "sold_weight_kg": 10, "sold_qty": 31}, 400),
    ({"stock_id": "STOCK", "sold_weight_kg": 10, "order_id": 9999}, 404),
])
def test_circle_sale_rejections(client, circle_stock, payload, status):
    if payload.get("stock_id") == "STOCK":
        payload = dict(payload, stock_id=circle_stock["stock"]["id"])
    assert client.post("/api/circle-sales", json=payload).status_code == status
    assert client.get("/api/circle-sales").json() == []


def test_negative_piece_count_is_rejected(client, circle_stock, make_order):
    stock_id = circle_stock["stock"]["id"]
    order = make_order(company="Acme", ordered_qty_pcs=10)
    res = client.post("/api/circle-sales", json={
        "stock_id": stock_id, "sold_weight_kg": 1, "sold_qty": -50, "order_id": order["id"],
    })
    assert res.status_code == 400
    assert _available(client, stock_id) == (300, 30)
    o = client.get("/api/orders").json()[0]
    assert o["fulfilled_qty_pcs"] == 0
    assert o["status"] == "Pending"


def test_sale_links_order_through_order_no(client, circle_stock, make_order):
    stock_id = circle_stock["stock"]["id"]
    order = make_order(company="Acme", ordered_weight_kg=50)
    res = client.post("/api/circle-sales", json={"stock_id": stock_id, "sold_weight_kg": 50, "order_no": order["id"]})
    assert res.status_code == 201, res.text
    assert res.json()["order_id"] == order["id"]
    assert client.get("/api/orders").json()[0]["status"] == "Fulfilled"

    res = client.post("/api/circle-sales", json={"stock_id": stock_id, "sold_weight_kg": 5, "order_no": ""})
    assert res.status_code == 201
    assert res.json()["order_id"] is None


def test_circle_sales_listing_carries_lineage(client, circle_stock):
    client.post("/api/circle-sales", json={"stock_id": circle_stock["stock"]["id"], "sold_weight_kg": 5})
    sale = client.get("/api/circle-sales").json()[0]
    assert sale["source_ref"] == "0100"
    assert sale["grade"] == "SS304"
    assert sale["thickness_mm"] == 2.0
    assert sale["size_mm"] == 200


def test_delete_unknown_sale(client):
    assert client.delete("/api/circle-sales/42").status_code == 404


def test_record_order_sells_remaining_target(client, circle_stock, make_order):
    stock_id = circle_stock["stock"]["id"]
    order = make_order(company="Acme", ordered_weight_kg=100, price_per_kg=75)

    res = client.post("/api/circle-sales/record-order", json={"stock_id": stock_id, "order_id": order["id"]})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["ok"] is True
    assert body["sale"]["sold_weight_kg"] == 100
    assert body["sale"]["buyer"] == "Acme"
    assert body["order"]["status"] == "Fulfilled"

    res = client.post("/api/circle-sales/record-order", json={"stock_id": stock_id, "order_id": order["id"]})
    assert res.status_code == 400
    assert res.json()["detail"] == "Order target already fulfilled"


def test_record_order_without_target_takes_everything(client, circle_stock, make_order):
    stock_id = circle_stock["stock"]["id"]
    order = make_order(company="Acme")
    res = client.post("/api/circle-sales/record-order", json={"stock_id": stock_id, "order_id": order["id"]})
    assert res.json()["sale"]["sold_weight_kg"] == 300

    other = make_order(company="Bolt")
    res = client.post("/api/circle-sales/record-order", json={"stock_id": stock_id, "order_id": other["id"]})
    assert res.status_code == 400
    assert res.json()["detail"] == "No available weight left in this stock"


# =============================================================================
# PL
# =============================================================================

@pytest.fixture
def pl_stock(client, make_coil, make_run):
    coil = make_coil(rn="0200", grade="SS304")
    old = make_run(coil["id"], run_date="2026-01-01", net_weight_kg=100, circle_weight_kg=None, qty=None,
                   scrap_weight_kg=None, pl_size=100, pl_weight_kg=30)
    new = make_run(coil["id"], run_date="2026-02-01", net_weight_kg=100, circle_weight_kg=None, qty=None,
                   scrap_weight_kg=None, pl_size=100, pl_weight_kg=50)
    rows = {r["source_id"]: r for r in client.get("/api/pl-stock").json()}
    return rows[old["id"]], rows[new["id"]]


def test_pl_bulk_sale_is_fifo_and_reports_leftover(client, pl_stock):
    old, new = pl_stock
    res = client.post("/api/pl-sales/record-bulk", json={"grade": "ss304", "weight_kg": 60})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["total_requested"] == 60
    assert body["total_sold"] == pytest.approx(60)
    assert body["leftover"] == 0
    assert [(a["pl_stock_id"], a["sold_weight_kg"]) for a in body["allocations"]] == [(old["id"], 30), (new["id"], 30)]

    body = client.post("/api/pl-sales/record-bulk", json={"grade": "SS304", "weight_kg": 40, "size_mm": 100}).json()
    assert body["total_sold"] == pytest.approx(20)
    assert body["leftover"] == pytest.approx(20)
    assert body["filters"] == {"size_mm": 100, "thickness_mm": None}


def test_pl_bulk_without_candidates(client, pl_stock):
    assert client.post("/api/pl-sales/record-bulk", json={"grade": "MS", "weight_kg": 10}).status_code == 400
    assert client.post("/api/pl-sales/record-bulk", json={"grade": "SS304", "weight_kg": 10, "size_mm": 55}).status_code == 400
    assert client.post("/api/pl-sales/record-bulk", json={"grade": "SS304", "weight_kg": 0}).status_code == 400


def test_pl_sale_checks_availability(client, pl_stock, make_order):
    old, _ = pl_stock
    order = make_order(company="Acme", ordered_weight_kg=25)
    assert client.post("/api/pl-sales", json={"pl_stock_id": old["id"], "sold_weight_kg": 31}).status_code == 400
    assert client.post("/api/pl-sales", json={"pl_stock_id": old["id"], "sold_weight_kg": 5, "sold_qty": -3}).status_code == 400
    res = client.post("/api/pl-sales", json={"pl_stock_id": old["id"], "sold_weight_kg": 25, "order_id": order["id"]})
    assert res.status_code == 201
    order_row = client.get("/api/orders").json()[0]
    assert order_row["status"] == "Fulfilled"

    client.delete(f"/api/pl-sales/{res.json()['id']}")
    assert client.get("/api/orders").json()[0]["status"] == "Pending"
    row = next(r for r in client.get("/api/pl-stock").json() if r["id"] == old["id"])
    assert row["available_weight_kg"] == 30


# =============================================================================
# SCRAP
# =============================================================================

@pytest.fixture
def scrap_pools(client, make_coil, make_run):
    first = make_coil(rn="0301", grade="MS")
    second = make_coil(rn="0302", grade="MS")
    make_run(first["id"], run_date="2026-01-01", circle_weight_kg=None, qty=None, scrap_weight_kg=20)
    make_run(second["id"], run_date="2026-02-01", circle_weight_kg=None, qty=None, scrap_weight_kg=30)
    return first, second


def test_scrap_pool_limits(client, scrap_pools):
    payload = {"rn": "0301", "source_type": "circle", "grade": "MS", "weight_kg": 15, "price_per_kg": 20}
    res = client.post("/api/scrap-sales", json=payload)
    assert res.status_code == 201
    sale_id = res.json()["id"]

    assert client.post("/api/scrap-sales", json=dict(payload, weight_kg=6)).status_code == 400
    assert client.post("/api/scrap-sales", json=dict(payload, weight_kg=0)).status_code == 400

    # the edited sale's own weight is given back before checking
    assert client.patch(f"/api/scrap-sales/{sale_id}", json={"weight_kg": 20}).status_code == 200
    assert client.patch(f"/api/scrap-sales/{sale_id}", json={"weight_kg": 21}).status_code == 400

    listed = client.get("/api/scrap-sales").json()
    assert listed[0]["weight_kg"] == 20
    assert listed[0]["total_value"] == pytest.approx(400)

    pool = next(p for p in client.get("/api/scrap").json()["rows"] if p["rn"] == "0301")
    assert pool["remaining"] == 0


def test_scrap_totals(client, scrap_pools):
    client.post("/api/scrap-sales", json={"rn": "0302", "source_type": "circle", "weight_kg": 10})
    totals = client.get("/api/scrap").json()["totals"]
    assert totals == {"total_kg": 50, "sold_kg": 10, "available_kg": 40}


def test_scrap_bulk_consumes_oldest_pool_first(client, scrap_pools):
    res = client.post("/api/scrap-sales/record-bulk", json={"grade": "ms", "weight_kg": 40})
    assert res.status_code == 200, res.text
    body = res.json()
    assert [(a["rn"], a["weight_kg"]) for a in body["allocations"]] == [("0301", 20), ("0302", 20)]
    assert body["leftover"] == 0
    assert body["filter_source_type"] is None

    body = client.post("/api/scrap-sales/record-bulk", json={"grade": "MS", "weight_kg": 25, "source_type": "circle"}).json()
    assert body["total_sold"] == pytest.approx(10)
    assert body["leftover"] == pytest.approx(15)


def test_scrap_bulk_rejects_bad_source_type(client, scrap_pools):
    res = client.post("/api/scrap-sales/record-bulk", json={"grade": "MS", "weight_kg": 5, "source_type": "pl"})
    assert res.status_code == 400


def test_scrap_sale_repointed_between_orders(client, scrap_pools, make_order):
    a = make_order(company="A", ordered_weight_kg=10)
    b = make_order(company="B", ordered_weight_kg=10)
    sale = client.post("/api/scrap-sales", json={
        "rn": "0301", "source_type": "circle", "weight_kg": 10, "order_id": a["id"],
    }).json()
    statuses = {o["id"]: o["status"] for o in client.get("/api/orders").json()}
    assert statuses == {a["id"]: "Fulfilled", b["id"]: "Pending"}

    client.patch(f"/api/scrap-sales/{sale['id']}", json={"order_id": b["id"]})
    statuses = {o["id"]: o["status"] for o in client.get("/api/orders").json()}
    assert statuses == {a["id"]: "Pending", b["id"]: "Fulfilled"}

    client.delete(f"/api/scrap-sales/{sale['id']}")
    assert client.get("/api/orders").json()[0]["status"] == "Pending"


def test_sale_services_refuse_negative_qty(db):
    coil = CoilService.purchase(db, {"rn": "0700", "grade": "SS304", "purchase_weight_kg": 500})
    CircleRunService.create(db, {
        "coil_id": coil.id, "net_weight_kg": 200, "op_size_mm": 150, "circle_weight_kg": 80, "qty": 8,
        "pl_size": 90, "pl_weight_kg": 40,
    })
    circle = db.query(CircleStock).one()
    pl = db.query(PlStock).one()

    with pytest.raises(ValidationError):
        CircleSaleService.create(db, {"stock_id": circle.id, "sold_weight_kg": 1, "sold_qty": -1})
    with pytest.raises(ValidationError):
        PlSaleService.create(db, {"pl_stock_id": pl.id, "sold_weight_kg": 1, "sold_qty": -1})

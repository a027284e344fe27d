from datetime import date

import pytest

from tracker_core.app.services.coil_service import CoilService
from tracker_core.app.services.production_service import CircleRunService, PattaRunService, PlRunService
from tracker_core.app.services.stock_service import LineageResolver, allocate_fifo, descends_from_coil


def test_allocate_fifo_takes_in_order():
    takes, leftover = allocate_fifo([("a", 30.0), ("b", 0.0), ("c", 50.0)], 60)
    assert takes == [("a", 30.0), ("c", 30.0)]
    assert leftover == 0


def test_allocate_fifo_reports_leftover():
    takes, leftover = allocate_fifo([("a", 10.0)], 25)
    assert takes == [("a", 10.0)]
    assert leftover == pytest.approx(15)


def test_lineage_through_nested_runs(db):
    coil = CoilService.purchase(db, {"rn": "0900", "grade": "SS304", "thickness": 1.5, "purchase_weight_kg": 800})
    run = CircleRunService.create(db, {
        "coil_id": coil.id, "net_weight_kg": 400, "patta_size": 60, "patta_weight_kg": 100,
        "run_date": date(2026, 3, 1),
    })
    child = PattaRunService.list_runs(db)[0]
    nested = PattaRunService.create(db, {"source_type": "patta", "patta_source_id": child["id"]})
    pl_run = PlRunService.create(db, {"source_type": "circle", "pl_source_id": run.id})
    pl_nested = PlRunService.create(db, {"source_type": "pl", "pl_source_id": pl_run.id})
    db.commit()

    resolver = LineageResolver(db)
    lineage = resolver.resolve("patta", nested.id)
    assert lineage.source_ref == f"PATTA-{child['id']}"
    assert lineage.grade == "SS304"
    assert lineage.thickness == 1.5
    assert lineage.coil_id == coil.id

    lineage = resolver.resolve("pl", pl_nested.id)
    assert lineage.source_ref == f"PL-{pl_nested.id}"
    assert lineage.coil_id == coil.id
    assert descends_from_coil(resolver, "pl", pl_nested.id, coil.id)


def test_lineage_of_missing_run_is_empty(db):
    lineage = LineageResolver(db).resolve("circle", 12345)
    assert lineage.coil is None
    assert lineage.source_ref is None


def test_patta_run_own_grade_beats_coil(db):
    coil = CoilService.purchase(db, {"rn": "0901", "grade": "SS304", "purchase_weight_kg": 100})
    run = CircleRunService.create(db, {"coil_id": coil.id, "net_weight_kg": 50})
    patta = PattaRunService.create(db, {"source_type": "circle", "patta_source_id": run.id, "grade": "SS201"})
    assert LineageResolver(db).resolve("patta", patta.id).grade == "SS201"


def test_matches_tags_full_and_partial(client, circle_stock, make_order):
    stock_id = circle_stock["stock"]["id"]
    full = make_order(company="A", grade="ss304", thickness_mm=2.0, op_size_mm=200, ordered_weight_kg=100)
    partial = make_order(company="B", grade="SS304", thickness_mm=2.0, op_size_mm=200, ordered_weight_kg=500)
    make_order(company="C", grade="MS", thickness_mm=2.0, op_size_mm=200, ordered_weight_kg=100)
    make_order(company="D", grade="SS304", thickness_mm=3.0, op_size_mm=200, ordered_weight_kg=100)
    make_order(company="E", grade="SS304", ordered_weight_kg=0)
    cancelled = make_order(company="F", grade="SS304", ordered_weight_kg=10)
    client.patch(f"/api/orders/{cancelled['id']}/cancel", json={"remarks": "void"})

    res = client.get(f"/api/circle-stock/{stock_id}/matches")
    assert res.status_code == 200
    covers = {m["order_id"]: m["cover"] for m in res.json()}
    assert covers == {full["id"]: "full", partial["id"]: "partial"}

    assert client.get("/api/circle-stock/9999/matches").status_code == 404


def test_scrap_only_lists_runs_newest_first(client, make_coil, make_run):
    coil = make_coil(rn="0950", grade="MS")
    make_run(coil["id"], run_date="2026-01-01", net_weight_kg=100, scrap_weight_kg=5)
    make_run(coil["id"], run_date="2026-02-01", net_weight_kg=100, scrap_weight_kg=7)
    rows = client.get("/api/scrap-only").json()
    assert [r["scrap_weight_kg"] for r in rows] == [7, 5]
    assert rows[0]["source_ref"] == "0950"
    assert client.get("/api/scrap-only", params={"q": "nomatch"}).json() == []

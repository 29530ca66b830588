from decimal import Decimal

from sqlalchemy import update

from stockledger.models.stock import StockProjection

HEADERS = {"X-Business-ID": "biz-1", "X-Actor-ID": "clerk"}
SCOPE = {"product_id": "prod-1", "variation_id": "var-1", "location_id": "loc-main"}


def _move(client, type_: str, quantity_delta, **extra):
    return client.post(
        "/stock/movements",
        json={**SCOPE, "type": type_, "quantity_delta": quantity_delta, **extra},
        headers=HEADERS,
    )


def _level(client, **scope) -> Decimal:
    res = client.get("/stock/level", params={**SCOPE, **scope}, headers=HEADERS)
    assert res.status_code == 200, res.text
    return Decimal(res.json()["qty_available"])


def test_health_endpoints(test_context):
    client, _ = test_context
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/").json()["docs"] == "/docs"


def test_record_movement_and_read_level(test_context):
    client, _ = test_context

    res = _move(client, "opening_stock", 100, unit_cost="12.50")
    assert res.status_code == 200, res.text
    body = res.json()
    assert Decimal(body["new_balance"]) == Decimal("100")
    assert body["entry"]["created_by"] == "clerk"
    assert body["entry"]["type"] == "opening_stock"
    assert res.headers.get("X-Request-ID")

    res = _move(client, "sale", -30, reference_type="sale", reference_id="sale-1", reference_number="INV-1")
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["previous_balance"]) == Decimal("100")
    assert _level(client) == Decimal("70")


def test_domain_errors_use_error_envelope(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 3)

    res = _move(client, "sale", -5)
    assert res.status_code == 409
    error = res.json()["error"]
    assert error["code"] == "insufficient_stock"
    assert error["path"] == "/stock/movements"
    assert Decimal(error["details"]["shortage"]) == Decimal("2")
    assert _level(client) == Decimal("3")

    res = _move(client, "purchase", -1)
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "validation_error"


def test_business_header_is_required(test_context):
    client, _ = test_context
    res = client.get("/stock/level", params=SCOPE)
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "validation_error"


def test_bulk_movements_roll_back_together(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 5)

    res = client.post(
        "/stock/movements/bulk",
        json={
            "items": [
                {**SCOPE, "type": "sale", "quantity_delta": -2},
                {**SCOPE, "variation_id": "var-2", "type": "sale", "quantity_delta": -1},
            ]
        },
        headers=HEADERS,
    )
    assert res.status_code == 409
    assert _level(client) == Decimal("5")

    res = client.post(
        "/stock/movements/bulk",
        json={
            "items": [
                {**SCOPE, "type": "sale", "quantity_delta": -2},
                {**SCOPE, "type": "customer_return", "quantity_delta": 1},
            ]
        },
        headers=HEADERS,
    )
    assert res.status_code == 200, res.text
    assert [Decimal(item["new_balance"]) for item in res.json()["items"]] == [Decimal("3"), Decimal("4")]


def test_transfer_between_locations(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 10)

    res = client.post(
        "/stock/transfers",
        json={
            "product_id": "prod-1",
            "variation_id": "var-1",
            "from_location_id": "loc-main",
            "to_location_id": "loc-branch",
            "quantity": 4,
        },
        headers=HEADERS,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["transfer_out"]["entry"]["reference_number"].startswith("TRF-")
    assert _level(client) == Decimal("6")
    assert _level(client, location_id="loc-branch") == Decimal("4")


def test_ledger_listing_is_paginated(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 10)
    _move(client, "sale", -1)
    _move(client, "sale", -1)

    res = client.get("/stock/ledger", params={**SCOPE, "limit": 2}, headers=HEADERS)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "count": 2, "has_next": True}
    assert [Decimal(item["balance_after"]) for item in body["items"]] == [Decimal("8"), Decimal("9")]


def test_balance_as_of(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 100, occurred_at="2026-01-10T09:00:00Z")
    _move(client, "sale", -30, occurred_at="2026-01-12T09:00:00Z")
    _move(client, "purchase", 50, unit_cost=4, occurred_at="2026-01-15T09:00:00Z")

    res = client.get("/stock/level/as-of", params={**SCOPE, "as_of": "2026-01-13"}, headers=HEADERS)
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["quantity"]) == Decimal("70")
    assert res.json()["source"] == "ledger"

    res = client.get("/stock/level/as-of", params={**SCOPE, "as_of": "2026-01-01"}, headers=HEADERS)
    assert Decimal(res.json()["quantity"]) == Decimal("0")

    res = client.get("/stock/level/as-of", params={**SCOPE, "as_of": "last tuesday"}, headers=HEADERS)
    assert res.status_code == 422


def test_drift_refusal_over_http(test_context):
    client, session_local = test_context
    _move(client, "opening_stock", 100, occurred_at="2026-01-10T09:00:00Z")
    _move(client, "sale", -30, occurred_at="2026-01-12T09:00:00Z")
    with session_local() as db:
        db.execute(update(StockProjection).values(qty_available=Decimal("75")))
        db.commit()

    res = client.get(
        "/stock/level/as-of",
        params={**SCOPE, "as_of": "2026-01-11", "policy": "refuse"},
        headers=HEADERS,
    )
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "ledger_drift"


def test_correction_workflow(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 100, occurred_at="2026-01-10T09:00:00Z")
    _move(client, "sale", -30, occurred_at="2026-01-12T09:00:00Z")

    res = client.post(
        "/corrections",
        json={**SCOPE, "physical_count": 65, "reason": "cycle_count"},
        headers=HEADERS,
    )
    assert res.status_code == 200, res.text
    correction = res.json()
    assert correction["status"] == "pending"
    assert Decimal(correction["difference"]) == Decimal("-5")

    res = client.post(f"/corrections/{correction['id']}/approve", headers={**HEADERS, "X-Actor-ID": "manager"})
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "approved"
    assert res.json()["approved_by"] == "manager"
    assert _level(client) == Decimal("65")

    res = client.post(f"/corrections/{correction['id']}/approve", headers=HEADERS)
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "conflict"

    res = client.post("/corrections/missing/approve", headers=HEADERS)
    assert res.status_code == 404

    res = client.get("/corrections", params={"status": "approved"}, headers=HEADERS)
    assert res.json()["pagination"]["total"] == 1

    anchor = client.get("/stock/anchor", params=SCOPE, headers=HEADERS).json()
    assert anchor["anchored"] is True
    assert Decimal(anchor["baseline_quantity"]) == Decimal("65")

    history = client.get("/stock/history", params=SCOPE, headers=HEADERS).json()
    assert Decimal(history["opening_line"]["running_balance"]) == Decimal("65")
    assert history["lines"] == []
    assert history["summary"]["is_reconciled"] is True

    full = client.get("/stock/history", params={**SCOPE, "start": "2026-01-01"}, headers=HEADERS).json()
    assert [line["type"] for line in full["lines"]] == ["opening_stock", "sale", "adjustment"]
    assert Decimal(full["summary"]["calculated_final_balance"]) == Decimal("65")


def test_bulk_approve(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 10)
    ids = []
    for count in (9, 11):
        res = client.post("/corrections", json={**SCOPE, "physical_count": count, "reason": "recount"}, headers=HEADERS)
        ids.append(res.json()["id"])

    res = client.post("/corrections/bulk-approve", json={"correction_ids": [*ids, "missing"]}, headers=HEADERS)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["approved"] == 2
    assert body["failed"] == 1
    assert _level(client) == Decimal("10")


def test_availability(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 5)

    res = client.post(
        "/stock/availability",
        json={"location_id": "loc-main", "items": [{"variation_id": "var-1", "quantity": 3}]},
        headers=HEADERS,
    )
    assert res.status_code == 200, res.text
    assert res.json()["all_available"] is True

    res = client.post(
        "/stock/availability",
        json={"location_id": "loc-main", "items": [{"variation_id": "var-1", "quantity": 8}]},
        headers=HEADERS,
    )
    item = res.json()["items"][0]
    assert item["available"] is False
    assert Decimal(item["shortage"]) == Decimal("3")


def test_reconciliation_endpoints(test_context):
    client, session_local = test_context
    _move(client, "opening_stock", 100)
    _move(client, "sale", -10)
    with session_local() as db:
        db.execute(update(StockProjection).values(qty_available=Decimal("92")))
        db.commit()

    res = client.get("/reconciliation/variances", headers=HEADERS)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["summary"]["total_variances"] == 1
    assert body["items"][0]["auto_fixable"] is True

    res = client.post("/reconciliation/fix", json={}, headers=HEADERS)
    assert res.status_code == 200, res.text
    assert res.json()["fixed"] == 1

    assert client.get("/reconciliation/variances", headers=HEADERS).json()["items"] == []
    chain = client.get("/reconciliation/chain", params=SCOPE, headers=HEADERS).json()
    assert chain["telescopes"] is True
    assert chain["projection_agrees"] is True
    assert chain["entry_count"] == 3


def test_availability_sums_repeated_lines(test_context):
    client, _ = test_context
    _move(client, "opening_stock", 5)

    res = client.post(
        "/stock/availability",
        json={
            "location_id": "loc-main",
            "items": [{"variation_id": "var-1", "quantity": 3}, {"variation_id": "var-1", "quantity": 3}],
        },
        headers=HEADERS,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["all_available"] is False
    assert [Decimal(item["shortage"]) for item in body["items"]] == [Decimal("1"), Decimal("1")]


def test_businesses_do_not_share_stock(test_context):
    client, _ = test_context
    other = {**HEADERS, "X-Business-ID": "biz-2"}
    _move(client, "opening_stock", 100)

    res = client.get("/stock/level", params=SCOPE, headers=other)
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["qty_available"]) == Decimal("0")

    res = client.post("/stock/movements", json={**SCOPE, "type": "sale", "quantity_delta": -30}, headers=other)
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "insufficient_stock"
    assert _level(client) == Decimal("100")

    chain = client.get("/reconciliation/chain", params=SCOPE, headers=HEADERS).json()
    assert chain["telescopes"] is True
    assert chain["projection_agrees"] is True


def test_investigate_endpoint(test_context):
    client, session_local = test_context
    _move(client, "opening_stock", 100)
    _move(client, "sale", -10)

    res = client.get("/reconciliation/investigate", params=SCOPE, headers=HEADERS)
    assert res.status_code == 200, res.text
    assert res.json()["variance"] is None
    assert res.json()["analysis"]["recommendations"] == ["No action required"]

    with session_local() as db:
        db.execute(update(StockProjection).values(qty_available=Decimal("85")))
        db.commit()

    res = client.get("/reconciliation/investigate", params={**SCOPE, "days_back": 30}, headers=HEADERS)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["business_id"] == "biz-1"
    assert body["variance"]["variance_type"] == "shortage"
    assert [entry["type"] for entry in body["entries"]] == ["sale", "opening_stock"]
    assert "Check for unrecorded sales or wastage" in body["analysis"]["recommendations"]

    res = client.get("/reconciliation/investigate", params={**SCOPE, "days_back": 0}, headers=HEADERS)
    assert res.status_code == 422

"""
HTTP API tests: store header, JSON error shape, and the end-to-end flow
through the blueprints.
"""

import io

import pytest


@pytest.fixture
def headers(store):
    return {'X-Store-Id': str(store.id)}


def _create_product(client, headers, **overrides):
    body = {"sku": "MUG-01", "name": "Mug", "price_cents": 1000, "stock": 20}
    body.update(overrides)
    response = client.post('/products', json=body, headers=headers)
    assert response.status_code == 201, response.json
    return response.json["product"]


def _create_order(client, headers, product_id, quantity=2, **fields):
    body = {"line_items": [{"product_id": product_id, "quantity": quantity}]}
    body.update(fields)
    response = client.post('/orders', json=body, headers=headers)
    assert response.status_code == 201, response.json
    return response.json["order"]


def _set_status(client, headers, order_id, status):
    return client.patch(f'/orders/{order_id}/status', json={"status": status}, headers=headers)


class TestPlumbing:
    def test_health(self, client, store):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.json["status"] == "healthy"
        assert response.json["checks"]["database"]["status"] == "healthy"
        assert response.json["checks"]["ledger"]["details"]["unbalanced_product_ids"] == []

    def test_store_header_required(self, client, store):
        response = client.get('/products')
        assert response.status_code == 400
        assert response.json["error"] == "VALIDATION_ERROR"

    def test_store_header_must_be_integer(self, client, store):
        response = client.get('/products', headers={'X-Store-Id': 'main'})
        assert response.status_code == 400

    def test_unknown_store(self, client, store):
        response = client.get('/products', headers={'X-Store-Id': '999999'})
        assert response.status_code == 404
        assert response.json["error"] == "NOT_FOUND"

    def test_unknown_route_is_json(self, client, store):
        response = client.get('/nowhere')
        assert response.status_code == 404
        assert response.json["error"] == "NOT_FOUND"


class TestProducts:
    def test_create_and_get(self, client, headers):
        product = _create_product(client, headers)
        assert product["stock"] == 20
        assert product["initial_stock"] == 20

        response = client.get(f'/products/{product["id"]}', headers=headers)
        assert response.status_code == 200
        assert response.json["product"]["sku"] == "MUG-01"

    @pytest.mark.parametrize("body", [
        {"sku": "X", "name": "X", "price_cents": 10.5},
        {"sku": "X", "name": "X", "stock": -1},
        {"sku": "X", "name": "X", "version_id": 4},
        {"name": "no sku"},
    ])
    def test_invalid_payloads(self, client, headers, body):
        response = client.post('/products', json=body, headers=headers)
        assert response.status_code == 400
        assert response.json["error"] == "VALIDATION_ERROR"

    def test_duplicate_sku(self, client, headers):
        _create_product(client, headers)
        response = client.post('/products', json={"sku": "MUG-01", "name": "Again"}, headers=headers)
        assert response.status_code == 400

    def test_movements_endpoint(self, client, headers):
        product = _create_product(client, headers, stock=10)
        order = _create_order(client, headers, product["id"], quantity=3)
        for status in ("CONFIRMED", "IN_PREPARATION", "READY_TO_SHIP"):
            assert _set_status(client, headers, order["id"], status).status_code == 200

        response = client.get(f'/products/{product["id"]}/movements', headers=headers)

        assert response.status_code == 200
        assert len(response.json["movements"]) == 1
        assert response.json["movements"][0]["quantity_delta"] == -3
        assert response.json["balance"]["current_stock"] == 7
        assert response.json["balance"]["balanced"] is True

    def test_product_of_other_store_hidden(self, client, headers, other_store):
        product = _create_product(client, headers)
        response = client.get(f'/products/{product["id"]}', headers={'X-Store-Id': str(other_store.id)})
        assert response.status_code == 404


class TestOrders:
    def test_lifecycle_over_http(self, client, headers):
        product = _create_product(client, headers, stock=100)
        order = _create_order(client, headers, product["id"], quantity=5, shipping_cost_cents=300)
        assert order["status"] == "PENDING"
        assert order["total_price_cents"] == 5300

        for status in ("CONFIRMED", "IN_PREPARATION", "READY_TO_SHIP"):
            response = _set_status(client, headers, order["id"], status)
            assert response.status_code == 200
        assert response.json["order"]["status"] == "READY_TO_SHIP"
        assert client.get(f'/products/{product["id"]}', headers=headers).json["product"]["stock"] == 95

        response = _set_status(client, headers, order["id"], "CANCELLED")
        assert response.status_code == 200
        assert client.get(f'/products/{product["id"]}', headers=headers).json["product"]["stock"] == 100

    def test_invalid_transition_error_shape(self, client, headers):
        product = _create_product(client, headers)
        order = _create_order(client, headers, product["id"])

        response = _set_status(client, headers, order["id"], "DELIVERED")

        assert response.status_code == 409
        assert response.json["error"] == "INVALID_TRANSITION"
        assert response.json["details"]["from_status"] == "PENDING"
        assert response.json["details"]["to_status"] == "DELIVERED"

    def test_invalid_status(self, client, headers):
        product = _create_product(client, headers)
        order = _create_order(client, headers, product["id"])
        response = _set_status(client, headers, order["id"], "TELEPORTED")
        assert response.status_code == 400
        assert response.json["error"] == "INVALID_STATUS"

    def test_insufficient_stock(self, client, headers):
        product = _create_product(client, headers, stock=1)
        order = _create_order(client, headers, product["id"], quantity=2)
        _set_status(client, headers, order["id"], "CONFIRMED")
        _set_status(client, headers, order["id"], "IN_PREPARATION")

        response = _set_status(client, headers, order["id"], "READY_TO_SHIP")

        assert response.status_code == 409
        assert response.json["error"] == "INSUFFICIENT_STOCK"
        assert response.json["details"]["product_ids"] == [product["id"]]

    @pytest.mark.parametrize("line_items", [[], [{"product_id": 1}], [{"product_id": 1, "quantity": 0}]])
    def test_bad_line_items(self, client, headers, line_items):
        response = client.post('/orders', json={"line_items": line_items}, headers=headers)
        assert response.status_code == 400

    def test_filter_and_delete(self, client, headers):
        product = _create_product(client, headers)
        kept = _create_order(client, headers, product["id"])
        doomed = _create_order(client, headers, product["id"])
        _set_status(client, headers, kept["id"], "CONFIRMED")

        response = client.get('/orders?status=CONFIRMED', headers=headers)
        assert [o["id"] for o in response.json["items"]] == [kept["id"]]

        assert client.delete(f'/orders/{doomed["id"]}', headers=headers).status_code == 200
        assert client.get(f'/orders/{doomed["id"]}', headers=headers).status_code == 404


class TestCarriers:
    def test_create_with_zones_and_replace(self, client, headers):
        response = client.post('/carriers', json={
            "name": "FastBike",
            "failed_attempt_fee_percent": 40,
            "zones": [{"zone_name": "North", "rate_cents": 800}],
        }, headers=headers)
        assert response.status_code == 201
        carrier = response.json["carrier"]
        assert [z["zone_key"] for z in carrier["zones"]] == ["north"]

        response = client.put(f'/carriers/{carrier["id"]}/zones', json={
            "zones": [{"zone_name": "Default", "rate_cents": 1000}, {"zone_name": "Asunción", "rate_cents": 700}],
        }, headers=headers)
        assert response.status_code == 200
        assert {z["zone_key"] for z in response.json["carrier"]["zones"]} == {"default", "asuncion"}

    def test_zones_required(self, client, headers):
        carrier = client.post('/carriers', json={"name": "Moto"}, headers=headers).json["carrier"]
        response = client.put(f'/carriers/{carrier["id"]}/zones', json={}, headers=headers)
        assert response.status_code == 400


class TestEndToEnd:
    def test_pick_dispatch_settle_return(self, client, headers):
        product = _create_product(client, headers, stock=50, price_cents=1000)
        carrier = client.post('/carriers', json={
            "name": "FastBike",
            "zones": [{"zone_name": "Default", "rate_cents": 500}],
        }, headers=headers).json["carrier"]

        delivered = _create_order(client, headers, product["id"], quantity=2, payment_method="cash")
        failed = _create_order(client, headers, product["id"], quantity=1, payment_method="cash")
        order_ids = [delivered["id"], failed["id"]]
        for oid in order_ids:
            _set_status(client, headers, oid, "CONFIRMED")

        # Picking + packing
        response = client.post('/warehouse/sessions', json={"order_ids": order_ids}, headers=headers)
        assert response.status_code == 201
        session = response.json["session"]
        assert session["status"] == "PICKING"

        response = client.post('/warehouse/sessions', json={"order_ids": order_ids}, headers=headers)
        assert response.status_code == 409
        assert response.json["error"] == "ORDER_ALREADY_IN_SESSION"

        response = client.post(f'/warehouse/sessions/{session["id"]}/pick', json={
            "product_id": product["id"],
            "picked_quantity": 3,
        }, headers=headers)
        assert response.status_code == 200

        response = client.post(f'/warehouse/sessions/{session["id"]}/complete-picking', headers=headers)
        assert response.json["session"]["status"] == "PACKING"

        response = client.post(f'/warehouse/sessions/{session["id"]}/pack', json={
            "order_id": delivered["id"],
            "product_id": product["id"],
        }, headers=headers)
        assert response.json["packing_progress"]["quantity_packed"] == 1

        for oid in order_ids:
            response = client.post(
                f'/warehouse/sessions/{session["id"]}/complete-packing',
                json={"order_id": oid},
                headers=headers,
            )
            assert response.status_code == 200
        assert response.json["session"]["status"] == "COMPLETED"
        assert client.get(f'/products/{product["id"]}', headers=headers).json["product"]["stock"] == 47

        response = client.get('/warehouse/sessions?active=1', headers=headers)
        assert response.json["items"] == []

        # Dispatch
        response = client.post('/settlements/dispatch-sessions', json={
            "carrier_id": carrier["id"],
            "order_ids": order_ids,
        }, headers=headers)
        assert response.status_code == 201
        dispatch = response.json["session"]

        response = client.get(f'/settlements/dispatch-sessions/{dispatch["id"]}/export?format=csv', headers=headers)
        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert f'{dispatch["code"]}.csv' in response.headers["Content-Disposition"]
        assert response.data.decode().splitlines()[0].startswith("code,recipient,phone")

        response = client.get(f'/settlements/dispatch-sessions/{dispatch["id"]}/export?format=xlsx', headers=headers)
        assert response.status_code == 200
        assert response.data[:2] == b"PK"

        response = client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/dispatch', headers=headers)
        assert response.json["session"]["status"] == "DISPATCHED"

        response = _set_status(client, headers, delivered["id"], "DELIVERED")
        assert response.status_code == 409
        assert response.json["error"] == "ORDER_ALREADY_IN_SESSION"
        assert response.json["details"]["session_id"] == dispatch["id"]

        # Courier results as a CSV upload keyed by the export's "code" column
        csv_body = (
            "code,result,amount,reason\n"
            f'{delivered["order_number"]},delivered,20.00,\n'
            f'{failed["order_number"]},no entregado,,not home\n'
        )
        response = client.post(
            f'/settlements/dispatch-sessions/{dispatch["id"]}/import',
            data={"file": (io.BytesIO(csv_body.encode("utf-8")), "results.csv")},
            content_type="multipart/form-data",
            headers=headers,
        )
        assert response.status_code == 200, response.json
        assert response.json["processed"] == 2
        assert response.json["errors"] == []
        assert response.json["session"]["status"] == "PROCESSING"

        response = client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/process', json={}, headers=headers)
        assert response.status_code == 201
        settlement = response.json["settlement"]
        assert settlement["total_cod_expected_cents"] == 2000
        assert settlement["carrier_fees_cents"] == 500
        assert settlement["failed_attempt_fee_cents"] == 250
        assert settlement["net_receivable_cents"] == 1250
        assert settlement["session_code"] == dispatch["code"]

        response = client.get(f'/settlements/{settlement["id"]}', headers=headers)
        assert response.status_code == 200
        assert client.get('/settlements', headers=headers).json["count"] == 1

        response = client.post(f'/settlements/{settlement["id"]}/pay', json={
            "amount_cents": 1000,
            "method": "transfer",
        }, headers=headers)
        assert response.status_code == 200
        assert response.json["settlement"]["payment_status"] == "partial"
        assert response.json["settlement"]["balance_due_cents"] == 250

        response = client.post(f'/settlements/{settlement["id"]}/pay', json={"amount_cents": 250}, headers=headers)
        assert response.json["settlement"]["payment_status"] == "paid"
        assert response.json["settlement"]["payment_method"] == "transfer"

        response = client.post(f'/settlements/{settlement["id"]}/pay', json={"amount_cents": 1}, headers=headers)
        assert response.status_code == 409
        assert response.json["error"] == "SETTLEMENT_ALREADY_PAID"

        response = client.post(f'/settlements/{settlement["id"]}/pay', json={"amount_cents": "lots"}, headers=headers)
        assert response.status_code == 400

        # Return of the failed delivery
        response = client.post('/returns/sessions', json={"order_ids": [failed["id"]]}, headers=headers)
        assert response.status_code == 201
        ret = response.json["session"]
        item = ret["items"][0]

        response = client.patch(
            f'/returns/sessions/{ret["id"]}/items/{item["id"]}',
            json={"status": "accepted"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json["item"]["accepted_quantity"] == 1

        response = client.post(f'/returns/sessions/{ret["id"]}/complete', headers=headers)
        assert response.status_code == 200
        assert response.json["accepted_units"] == 1
        assert client.get(f'/orders/{failed["id"]}', headers=headers).json["order"]["status"] == "RETURNED"
        assert client.get(f'/products/{product["id"]}', headers=headers).json["product"]["stock"] == 48

    def test_unconfirmed_discrepancy_over_http(self, client, headers):
        product = _create_product(client, headers, stock=10, price_cents=1000)
        carrier = client.post('/carriers', json={"name": "FastBike"}, headers=headers).json["carrier"]
        order = _create_order(client, headers, product["id"], quantity=1)
        for status in ("CONFIRMED", "IN_PREPARATION", "READY_TO_SHIP"):
            _set_status(client, headers, order["id"], status)

        dispatch = client.post('/settlements/dispatch-sessions', json={
            "carrier_id": carrier["id"],
            "order_ids": [order["id"]],
        }, headers=headers).json["session"]
        client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/dispatch', headers=headers)
        client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/import', json={
            "results": [{"order_id": order["id"], "result": "delivered", "cod_collected_cents": 900}],
        }, headers=headers)

        response = client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/process', json={}, headers=headers)
        assert response.status_code == 409
        assert response.json["error"] == "UNCONFIRMED_DISCREPANCY"
        assert response.json["details"]["discrepancy_cents"] == -100

        response = client.post(
            f'/settlements/dispatch-sessions/{dispatch["id"]}/process',
            json={"discrepancy_confirmed": True},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json["settlement"]["discrepancy_confirmed"] is True

    def test_return_quantity_exceeds_over_http(self, client, headers):
        product = _create_product(client, headers, stock=20)
        order = _create_order(client, headers, product["id"], quantity=10)
        for status in ("CONFIRMED", "IN_PREPARATION", "READY_TO_SHIP", "SHIPPED", "DELIVERED"):
            _set_status(client, headers, order["id"], status)

        ret = client.post('/returns/sessions', json={"order_ids": [order["id"]]}, headers=headers).json["session"]
        item = ret["items"][0]

        response = client.patch(
            f'/returns/sessions/{ret["id"]}/items/{item["id"]}',
            json={"status": "partial", "accepted_quantity": 8, "rejected_quantity": 4},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json["error"] == "QUANTITY_EXCEEDS_ORDERED"


class TestUploads:
    @pytest.fixture
    def dispatch(self, client, headers):
        product = _create_product(client, headers, stock=10)
        carrier = client.post('/carriers', json={"name": "FastBike"}, headers=headers).json["carrier"]
        order = _create_order(client, headers, product["id"], quantity=1)
        for status in ("CONFIRMED", "IN_PREPARATION", "READY_TO_SHIP"):
            _set_status(client, headers, order["id"], status)
        dispatch = client.post('/settlements/dispatch-sessions', json={
            "carrier_id": carrier["id"],
            "order_ids": [order["id"]],
        }, headers=headers).json["session"]
        client.post(f'/settlements/dispatch-sessions/{dispatch["id"]}/dispatch', headers=headers)
        return dispatch

    @pytest.mark.parametrize("filename,body", [
        ("results.json", b"{not json"),
        ("results.csv", b"\xff\xfe\x00c\x00o"),
        ("results.xlsx", b"this is not a workbook"),
        ("results.txt", b"code,result\n"),
    ])
    def test_malformed_upload_is_a_client_error(self, client, headers, dispatch, filename, body):
        response = client.post(
            f'/settlements/dispatch-sessions/{dispatch["id"]}/import',
            data={"file": (io.BytesIO(body), filename)},
            content_type="multipart/form-data",
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json["error"] == "VALIDATION_ERROR"
        assert response.json["details"]["field"] == "file"

        session = client.get(f'/settlements/dispatch-sessions/{dispatch["id"]}', headers=headers).json["session"]
        assert session["status"] == "DISPATCHED"

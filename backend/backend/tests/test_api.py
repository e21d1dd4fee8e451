from app.core.deps import kick_dispatcher


def _create_request(client, **overrides):
    body = {"product_name": "Widget", "quantity": 100, "priority": "high"}
    body.update(overrides)
    resp = client.post("/production/requests", json=body, headers={"X-Actor": "planner"})
    assert resp.status_code == 200, resp.text
    return resp.json()["request"]


def _create_batch(client, request_id):
    resp = client.post(
        f"/production/requests/{request_id}/batches",
        json={
            "quantity": 100,
            "steps": [
                {"step_name": "Cutting", "machine_type": "cnc", "scheduled_start": "2026-11-02T08:00:00Z"},
                {"step_name": "Assembly"},
            ],
            "materials": [{"material_id": "MAT-1", "quantity_required": 100, "unit_of_measure": "kg"}],
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_request_and_batch_flow(client):
    req = _create_request(client, request_number="R1")
    assert req["status"] == "received"
    assert req["priority"] == "high"

    created = _create_batch(client, req["id"])
    batch = created["batch"]
    assert batch["status"] == "pending"
    assert [s["step_order"] for s in batch["steps"]] == [1, 2]
    assert batch["steps"][0]["scheduled_start"] == "2026-11-02T08:00:00"
    assert created["changed"][0]["entity"] == "request"
    assert created["changed"][0]["status"] == "planned"
    assert "BatchCreated" in created["events"]

    step_id = batch["steps"][0]["id"]
    resp = client.post(f"/production/steps/{step_id}/start", json={"operator_id": "op-1"})
    assert resp.status_code == 200
    changed = {c["entity"]: c["status"] for c in resp.json()["changed"]}
    assert changed == {"batch": "in_progress", "request": "in_production"}

    detail = client.get("/production/requests/R1").json()
    assert detail["status"] == "in_production"
    assert detail["batches"][0]["status"] == "in_progress"

    listed = client.get("/production/batches", params={"request_id": req["id"], "status": "in_progress"}).json()
    assert [b["id"] for b in listed] == [batch["id"]]


def test_error_shapes(client):
    resp = client.post("/production/steps/nope/start")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"

    req = _create_request(client)
    batch = _create_batch(client, req["id"])["batch"]
    step_id = batch["steps"][0]["id"]

    resp = client.post(f"/production/steps/{step_id}/complete")
    assert resp.status_code == 409
    assert resp.json() == {"detail": "step cannot move from pending to completed", "error": "invalid_transition"}

    alloc_id = batch["allocations"][0]["id"]
    resp = client.post(f"/production/materials/{alloc_id}/allocate", json={"quantity": 150})
    assert resp.status_code == 422
    assert resp.json()["error"] == "over_allocation"

    resp = client.post(f"/production/steps/{step_id}/explode")
    assert resp.status_code == 404


def test_material_endpoints(client):
    req = _create_request(client)
    batch = _create_batch(client, req["id"])["batch"]
    alloc_id = batch["allocations"][0]["id"]

    resp = client.post(f"/production/materials/{alloc_id}/allocate", json={"quantity": 60})
    assert resp.json()["allocation"]["status"] == "partial"
    resp = client.post(f"/production/materials/{alloc_id}/allocate", json={"quantity": 100})
    assert resp.json()["allocation"]["status"] == "allocated"
    resp = client.post(f"/production/materials/{alloc_id}/consume")
    assert resp.json()["allocation"]["status"] == "consumed"

    resp = client.post(
        f"/production/batches/{batch['id']}/materials",
        json={"material_id": "MAT-1", "quantity_required": 1, "unit_of_measure": "kg"},
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "duplicate_material_allocation"


def test_cancel_request_endpoint(client):
    req = _create_request(client)
    batch = _create_batch(client, req["id"])["batch"]
    resp = client.post(f"/production/requests/{req['id']}/cancel", json={"reason": "customer withdrew"})
    assert resp.status_code == 200
    assert resp.json()["request"]["status"] == "cancelled"
    detail = client.get(f"/production/batches/{batch['id']}").json()
    assert detail["status"] == "cancelled"
    assert {s["status"] for s in detail["steps"]} == {"cancelled"}


def test_feedback_endpoints(client):
    req = _create_request(client)
    batch = _create_batch(client, req["id"])["batch"]

    fb = client.post("/feedback", json={"batch_id": batch["id"]}).json()["feedback"]
    assert fb["product_name"] == "Widget"
    assert fb["quality_score"] is None

    resp = client.post(f"/feedback/{fb['id']}/checks", json={"check_name": "Visual", "result": "pass"})
    assert resp.json()["feedback"]["quality_score"] == 100.0

    resp = client.post(
        f"/feedback/{fb['id']}/checks/bulk",
        json={"checks": [{"check_name": "Weld", "result": "fail"}, {"check_name": "Paint", "result": "pending"}]},
    )
    body = resp.json()
    assert body["events"] == ["QualityIssueDetected"]
    assert body["feedback"]["quality_score"] == 100 / 3

    weld = next(c for c in body["checks"] if c["check_name"] == "Weld")
    resp = client.patch(f"/feedback/checks/{weld['id']}", json={"notes": "still cracked"})
    assert resp.json()["events"] == []

    summary = client.get(f"/feedback/{fb['id']}/summary").json()
    assert summary["total"] == 3
    assert summary["counts"]["fail"] == 1
    assert summary["verdict"] == "needs_rework"

    resp = client.delete(f"/feedback/checks/{weld['id']}")
    assert resp.json()["feedback"]["quality_score"] == 50.0
    assert len(client.get(f"/feedback/{fb['id']}/checks").json()) == 2


def test_request_id_reaches_audit_log(client):
    resp = client.post(
        "/production/requests",
        json={"product_name": "Bolt", "quantity": 1},
        headers={"X-Request-Id": "req-123", "X-Actor": "planner"},
    )
    assert resp.headers["X-Request-Id"] == "req-123"
    request_id = resp.json()["request"]["id"]

    rows = client.get("/admin/events/audit", params={"entity_type": "request", "entity_id": request_id}).json()
    assert rows[0]["request_id"] == "req-123"
    assert rows[0]["actor"] == "planner"
    assert rows[0]["action"] == "request.created"


def test_admin_outbox(client):
    req = _create_request(client)
    _create_batch(client, req["id"])

    pending = client.get("/admin/events/outbox", params={"state": "pending"}).json()
    assert {e["topic"] for e in pending} == {"batch.created.queue", "batch.created.materials"}

    report = client.post("/admin/events/dispatch").json()
    assert report["untargeted"] == 2
    assert client.get("/admin/events/outbox", params={"state": "pending"}).json() == []

    event_id = pending[0]["id"]
    resp = client.post(f"/admin/events/outbox/{event_id}/requeue")
    assert resp.json()["event"]["delivered"] is False
    assert len(client.get("/admin/events/outbox", params={"state": "pending"}).json()) == 1

    assert client.get("/admin/events/outbox", params={"state": "bogus"}).status_code == 422


def test_reconcile_endpoint(client):
    body = client.post("/admin/events/reconcile").json()
    assert body == {"ok": True, "batches_checked": 0, "batches_updated": 0, "requests_checked": 0, "requests_updated": 0}


def test_batch_delete_schedules_delivery(client):
    route = next(
        r for r in client.app.routes
        if getattr(r, "path", None) == "/production/batches/{batch_id}" and "DELETE" in r.methods
    )
    assert kick_dispatcher in [d.dependency for d in route.dependencies]


def test_duplicate_request_number_is_a_conflict(client):
    _create_request(client, request_number="R9")
    resp = client.post("/production/requests", json={"product_name": "Widget", "quantity": 1, "request_number": "R9"})
    assert resp.status_code == 409
    assert resp.json() == {"detail": "request number already exists: R9", "error": "operation_not_permitted"}

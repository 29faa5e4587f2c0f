from datetime import date, timedelta
from decimal import Decimal

from fastapi.testclient import TestClient

from costcontrol.api.dependencies import get_db
from costcontrol.auth.jwt import get_current_user
from costcontrol.main import app
from costcontrol.models.models import PurchaseOrder


def _override_get_db(session):
    def _inner():
        try:
            yield session
        finally:
            pass

    return _inner


def _override_user(user):
    def _inner():
        return user

    return _inner


def test_requests_without_token_are_unauthorized(db_session):
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    try:
        resp = client.get("/projects/")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Could not validate credentials"
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_project_lifecycle_over_http(db_session, owner):
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(owner)
    try:
        resp = client.post(
            "/projects/", json={"project_code": "harbour", "name": "Harbour", "budget": {"total": 200000}}
        )
        assert resp.status_code == 201
        data = resp.json()
        project_id = data["project"]["id"]
        assert data["project"]["project_code"] == "HARBOUR"
        assert Decimal(data["project"]["budget_direct_construction"]) == Decimal("170000")
        assert data["warnings"] == []

        resp = client.get(f"/projects/{project_id}/finances")
        assert resp.status_code == 200
        assert Decimal(resp.json()["available_capital"]) == Decimal("0")

        resp = client.post("/projects/", json={"project_code": "HARBOUR", "name": "Again"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["detail"] == "Project code already in use"
        assert body["project_code"] == "HARBOUR"
        assert body["path"].endswith("/projects/")

        resp = client.post(f"/projects/{project_id}/archive")
        assert resp.status_code == 200
        assert resp.json()["status"] == "archived"
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_budget_shapes_cannot_be_mixed_with_unknown_fields(db_session, owner):
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(owner)
    try:
        resp = client.post("/projects/", json={"project_code": "X", "name": "X", "budget": {"steel": 10}})
        assert resp.status_code == 422
        assert resp.json()["detail"] == "Validation failed."
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_forbidden_roles_get_403(db_session, create_user, create_project):
    clerk = create_user(email="clerk@example.com", role_name="CLERK")
    project = create_project()
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(clerk)
    try:
        resp = client.post(f"/projects/{project.id}/archive")
        assert resp.status_code == 403
        assert resp.json()["action"] == "archive_project"
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_capital_shortfall_is_a_422_with_amounts(db_session, owner, create_project, fund_project):
    project = create_project()
    fund_project(project, 100)
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(owner)
    try:
        resp = client.post(
            "/spending/expenses",
            json={"project_id": project.id, "description": "Fuel", "amount": "250"},
        )
        assert resp.status_code == 201
        expense_id = resp.json()["id"]

        resp = client.post(f"/spending/expenses/{expense_id}/approve")
        assert resp.status_code == 422
        body = resp.json()
        assert "available: 100, required: 250" in body["detail"]
        assert Decimal(body["shortfall"]) == Decimal("150")
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_purchase_order_flow_over_http(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 10000)
    request = approved_request(project, 20, 25)
    supplier = create_supplier()
    payload = {
        "material_request_id": request.id,
        "supplier_id": supplier.id,
        "quantity_ordered": "20",
        "unit_cost": "25",
        "delivery_date": (date.today() + timedelta(days=7)).isoformat(),
    }
    client = TestClient(app)
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(owner)
    try:
        resp = client.post("/purchase-orders/", json=payload)
        assert resp.status_code == 201
        created = resp.json()
        assert created["is_existing"] is False
        assert created["order"]["status"] == "order_sent"
        assert created["order"]["financial_status"] == "not_committed"
        order_id = created["order"]["id"]

        resp = client.post("/purchase-orders/", json=payload)
        assert resp.status_code == 200
        assert resp.json()["is_existing"] is True
        assert resp.json()["order"]["id"] == order_id

        token = db_session.get(PurchaseOrder, order_id).response_token
        resp = client.post(f"/purchase-orders/respond/{token}", json={"action": "accept"})
        assert resp.status_code == 200
        assert resp.json()["financial_status"] == "committed"

        resp = client.get(f"/projects/{project.id}/finances")
        assert Decimal(resp.json()["committed_cost"]) == Decimal("500")

        resp = client.post("/purchase-orders/respond/not-a-token", json={"action": "accept"})
        assert resp.status_code == 404
    finally:
        app.dependency_overrides.clear()
        client.close()

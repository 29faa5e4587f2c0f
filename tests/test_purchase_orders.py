from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from costcontrol.core.errors import ConflictError, NotFoundError, TransactionFailure, ValidationError
from costcontrol.models.models import AuditLog, Material, MaterialRequest, ProjectFinances, PurchaseOrder
from costcontrol.services import material_requests as request_service
from costcontrol.services import purchase_orders as order_service
from costcontrol.services.consistency import commitment_guard
from costcontrol.services.finance import get_project_finances


def _payload(request, supplier, **overrides):
    payload = {
        "material_request_id": request.id,
        "supplier_id": supplier.id,
        "quantity_ordered": Decimal("10"),
        "unit_cost": Decimal("50"),
        "delivery_date": date.today() + timedelta(days=14),
    }
    payload.update(overrides)
    return payload


def _finances(db_session, project):
    db_session.expire_all()
    return get_project_finances(db_session, project.id)


def test_create_order_links_request_without_committing_capital(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()
    assert _finances(db_session, project).estimated_cost == Decimal("500.00")

    result = order_service.create_purchase_order(db_session, owner, _payload(request, supplier))

    order = result.order
    db_session.refresh(request)
    assert not result.is_existing
    assert result.capital.is_valid
    assert order.status == "order_sent"
    assert order.financial_status == "not_committed"
    assert order.total_cost == Decimal("500.00")
    assert len(order.idempotency_key) == 64
    assert request.status == "converted_to_order"
    assert request.linked_purchase_order_id == order.id
    finances = _finances(db_session, project)
    assert finances.committed_cost == Decimal("0.00")
    assert finances.estimated_cost == Decimal("0.00")
    audit_entries = db_session.query(AuditLog).filter(AuditLog.target_entity_type == "purchase_order").all()
    actions = [entry.action for entry in audit_entries]
    assert actions == ["purchase_order.create"]


def test_repeated_request_returns_existing_order(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()

    first = order_service.create_purchase_order(db_session, owner, _payload(request, supplier))
    repeat = order_service.create_purchase_order(
        db_session, owner, _payload(request, supplier, quantity_ordered="10.000", unit_cost="50.0")
    )

    assert repeat.is_existing
    assert repeat.order.id == first.order.id
    assert db_session.query(PurchaseOrder).count() == 1


def test_orphaned_order_does_not_block_a_new_one(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()
    orphan = order_service.create_purchase_order(db_session, owner, _payload(request, supplier)).order
    request.linked_purchase_order_id = None
    request.status = "approved"
    db_session.commit()

    result = order_service.create_purchase_order(db_session, owner, _payload(request, supplier))

    assert not result.is_existing
    assert result.order.id != orphan.id
    assert result.order.idempotency_key == orphan.idempotency_key
    db_session.refresh(request)
    assert request.linked_purchase_order_id == result.order.id


def test_order_beyond_available_capital_is_rejected(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 1000)
    request = approved_request(project, 100, 50)
    supplier = create_supplier()

    with pytest.raises(ValidationError) as excinfo:
        order_service.create_purchase_order(
            db_session, owner, _payload(request, supplier, quantity_ordered=Decimal("100"))
        )

    assert "available: 1000, required: 5000" in excinfo.value.detail
    assert excinfo.value.extra["shortfall"] == Decimal("4000.00")
    assert db_session.query(PurchaseOrder).count() == 0
    db_session.refresh(request)
    assert request.status == "approved"


def test_converted_request_cannot_be_ordered_again(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()
    order_service.create_purchase_order(db_session, owner, _payload(request, supplier))

    with pytest.raises(ConflictError):
        order_service.create_purchase_order(db_session, owner, _payload(request, supplier, unit_cost=Decimal("45")))


def test_request_must_be_approved_before_ordering(
    db_session, owner, create_project, create_supplier, fund_project
):
    project = create_project()
    fund_project(project, 100000)
    request = request_service.create_material_request(
        db_session,
        owner,
        project.id,
        {"material_name": "Sand", "quantity_needed": Decimal("5"), "estimated_unit_cost": Decimal("20")},
    )

    with pytest.raises(ValidationError):
        order_service.create_purchase_order(db_session, owner, _payload(request, create_supplier()))


def test_past_delivery_date_is_rejected(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)

    with pytest.raises(ValidationError):
        order_service.create_purchase_order(
            db_session,
            owner,
            _payload(request, create_supplier(), delivery_date=date.today() - timedelta(days=30)),
        )


def test_audit_failure_rolls_back_the_whole_order(
    db_session, owner, create_project, create_supplier, fund_project, approved_request, monkeypatch
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()

    def _broken_audit(*args, **kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(order_service, "audit_log", _broken_audit)

    with pytest.raises(TransactionFailure) as excinfo:
        order_service.create_purchase_order(db_session, owner, _payload(request, supplier))

    assert excinfo.value.extra["retryable"] is True
    assert db_session.query(PurchaseOrder).count() == 0
    reloaded = db_session.get(MaterialRequest, request.id)
    assert reloaded.status == "approved"
    assert reloaded.linked_purchase_order_id is None


def test_optimistic_mode_rejects_stale_snapshot(
    db_session, owner, create_project, create_supplier, fund_project, approved_request, monkeypatch
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    supplier = create_supplier()
    real_check = order_service.validate_capital_availability

    def _check_then_concurrent_write(session, project_id, amount):
        check = real_check(session, project_id, amount)
        session.execute(
            update(ProjectFinances)
            .where(ProjectFinances.project_id == project_id)
            .values(version=ProjectFinances.version + 1)
        )
        session.commit()
        return check

    monkeypatch.setattr(order_service, "validate_capital_availability", _check_then_concurrent_write)
    commitment_guard.mode = "optimistic"

    with pytest.raises(ConflictError) as excinfo:
        order_service.create_purchase_order(db_session, owner, _payload(request, supplier))

    assert excinfo.value.extra["retryable"] is True
    assert db_session.query(PurchaseOrder).count() == 0


def test_optimistic_mode_accepts_fresh_snapshot(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    version = _finances(db_session, project).version
    commitment_guard.mode = "optimistic"

    result = order_service.create_purchase_order(db_session, owner, _payload(request, create_supplier()))

    assert result.order.id is not None
    assert _finances(db_session, project).version > version


def test_supplier_acceptance_commits_capital(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    order = order_service.create_purchase_order(db_session, owner, _payload(request, create_supplier())).order

    accepted = order_service.respond_to_purchase_order(db_session, order.response_token, "accept", "Ships Monday")

    assert accepted.status == "accepted"
    assert accepted.financial_status == "committed"
    assert accepted.committed_at is not None
    finances = _finances(db_session, project)
    assert finances.committed_cost == Decimal("500.00")
    assert finances.available_capital == Decimal("99500.00")

    with pytest.raises(ConflictError):
        order_service.respond_to_purchase_order(db_session, order.response_token, "reject")


def test_acceptance_rechecks_capital_against_earlier_commitments(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 1000)
    supplier = create_supplier()
    first_request = approved_request(project, 10, 80, name="Cement")
    second_request = approved_request(project, 10, 80, name="Lime")
    first = order_service.create_purchase_order(
        db_session, owner, _payload(first_request, supplier, unit_cost=Decimal("80"))
    ).order
    second = order_service.create_purchase_order(
        db_session, owner, _payload(second_request, supplier, unit_cost=Decimal("80"))
    ).order

    order_service.respond_to_purchase_order(db_session, first.response_token, "accept")
    with pytest.raises(ValidationError) as excinfo:
        order_service.respond_to_purchase_order(db_session, second.response_token, "accept")

    assert excinfo.value.extra["shortfall"] == Decimal("600.00")
    assert excinfo.value.extra["purchase_order_id"] == second.id
    db_session.refresh(second)
    assert second.status == "order_sent"
    assert second.financial_status == "not_committed"
    finances = _finances(db_session, project)
    assert finances.committed_cost == Decimal("800.00")
    assert finances.available_capital == Decimal("200.00")


def test_supplier_rejection_frees_request_for_reordering(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    order = order_service.create_purchase_order(db_session, owner, _payload(request, create_supplier())).order

    rejected = order_service.respond_to_purchase_order(db_session, order.response_token, "reject", "Out of stock")

    db_session.refresh(request)
    assert rejected.status == "rejected"
    assert rejected.financial_status == "not_committed"
    assert request.status == "approved"
    assert request.linked_purchase_order_id is None
    replacement = order_service.create_purchase_order(
        db_session, owner, _payload(request, create_supplier(name="Second Supply"))
    )
    assert not replacement.is_existing


def test_delivery_realizes_accepted_order(
    db_session, owner, create_project, create_supplier, fund_project, approved_request
):
    project = create_project()
    fund_project(project, 100000)
    request = approved_request(project, 10, 50)
    order = order_service.create_purchase_order(db_session, owner, _payload(request, create_supplier())).order

    with pytest.raises(ConflictError):
        order_service.confirm_delivery(db_session, owner, order.id)

    order_service.respond_to_purchase_order(db_session, order.response_token, "accept")
    material = order_service.confirm_delivery(db_session, owner, order.id)

    db_session.refresh(order)
    assert material.status == "received"
    assert material.total_cost == Decimal("500.00")
    assert order.status == "converted"
    assert order.financial_status == "realized"
    assert order.linked_material_id == material.id
    finances = _finances(db_session, project)
    assert finances.total_used == Decimal("500.00")
    assert finances.committed_cost == Decimal("0.00")
    assert db_session.query(Material).count() == 1


def test_unknown_response_token_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        order_service.respond_to_purchase_order(db_session, "missing-token", "accept")


def test_idempotency_key_is_canonical():
    delivery = date(2030, 1, 15)

    key = order_service.compute_idempotency_key(1, 2, Decimal("10"), Decimal("5.5"), delivery)

    assert key == order_service.compute_idempotency_key(1, 2, "10.000", "5.50", "2030-01-15")
    assert key != order_service.compute_idempotency_key(1, 3, "10", "5.5", delivery)


def _approved_batch(db_session, owner, project, *names):
    batch = request_service.create_material_request_batch(
        db_session,
        owner,
        project.id,
        [
            {"material_name": name, "quantity_needed": Decimal("4"), "estimated_unit_cost": Decimal("25")}
            for name in names
        ],
    )
    return request_service.approve_batch(db_session, owner, batch.id)


def test_bulk_orders_collect_failures(db_session, owner, create_project, create_supplier, fund_project):
    project = create_project()
    fund_project(project, 100000)
    batch = _approved_batch(db_session, owner, project, "Tiles", "Grout")
    tiles, grout = sorted(batch.requests, key=lambda item: item.id)
    active = create_supplier()
    inactive = create_supplier(name="Closed Supply", status="inactive")
    delivery = date.today() + timedelta(days=10)

    result = order_service.create_bulk_purchase_orders(
        db_session,
        owner,
        batch.id,
        [
            {"material_request_id": tiles.id, "supplier_id": active.id, "delivery_date": delivery},
            {"material_request_id": grout.id, "supplier_id": inactive.id, "delivery_date": delivery},
        ],
    )

    assert len(result.created) == 1
    assert result.created[0].order.total_cost == Decimal("100.00")
    assert result.failures[0]["index"] == 1
    assert result.failures[0]["status_code"] == 422
    assert result.batch_status == "partially_ordered"


def test_bulk_orders_fail_when_nothing_is_created(
    db_session, owner, create_project, create_supplier, fund_project
):
    project = create_project()
    fund_project(project, 100000)
    batch = _approved_batch(db_session, owner, project, "Paint")
    inactive = create_supplier(status="inactive")

    with pytest.raises(ValidationError) as excinfo:
        order_service.create_bulk_purchase_orders(
            db_session,
            owner,
            batch.id,
            [
                {
                    "material_request_id": batch.requests[0].id,
                    "supplier_id": inactive.id,
                    "delivery_date": date.today() + timedelta(days=3),
                }
            ],
        )

    assert len(excinfo.value.extra["failures"]) == 1

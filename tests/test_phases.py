from datetime import date
from decimal import Decimal

import pytest

from costcontrol.core.errors import ConflictError, ValidationError
from costcontrol.services import phases as phase_service
from costcontrol.services import projects as project_service


def test_phase_allocations_cannot_exceed_dcc(db_session, owner, create_project, create_phase):
    project = create_project()
    create_phase(project, allocation=Decimal("500000"))
    second = create_phase(project)

    with pytest.raises(ValidationError) as excinfo:
        phase_service.allocate_phase_budget(db_session, owner, second.id, {"total": Decimal("400000")})

    assert "available: 300000, required: 400000" in excinfo.value.detail
    result = phase_service.allocate_phase_budget(db_session, owner, second.id, {"total": Decimal("300000")})
    assert result["remaining_dcc"] == Decimal("0.00")
    assert result["allocated_to_other_phases"] == Decimal("500000.00")


def test_reallocating_a_phase_excludes_its_own_allocation(db_session, owner, create_project, create_phase):
    project = create_project()
    phase = create_phase(project, allocation=Decimal("600000"))

    result = phase_service.allocate_phase_budget(db_session, owner, phase.id, {"total": Decimal("800000")})

    assert result["phase"].allocation_total == Decimal("800000.00")


def test_zero_dcc_allows_bootstrap_allocation(db_session, owner, create_project, create_phase):
    project = create_project(budget={"total": Decimal("0")})
    phase = create_phase(project)

    result = phase_service.allocate_phase_budget(db_session, owner, phase.id, {"total": Decimal("1000000")})

    assert result["dcc_budget"] == Decimal("0.00")
    assert result["phase"].allocation_total == Decimal("1000000.00")


def test_phase_contingency_is_always_zero(db_session, owner, create_project, create_phase):
    project = create_project()
    phase = create_phase(project)

    result = phase_service.allocate_phase_budget(
        db_session,
        owner,
        phase.id,
        {"materials": Decimal("100"), "labour": Decimal("50"), "contingency": Decimal("25")},
    )

    allocated = result["phase"]
    assert allocated.allocation_total == Decimal("150.00")
    assert allocated.allocation_contingency == Decimal("0.00")


def test_breakdown_larger_than_total_is_rejected(db_session, owner, create_project, create_phase):
    project = create_project()
    phase = create_phase(project)

    with pytest.raises(ValidationError):
        phase_service.allocate_phase_budget(
            db_session, owner, phase.id, {"total": Decimal("100"), "materials": Decimal("150")}
        )


def test_duplicate_phase_code_conflicts(db_session, owner, create_project):
    project = create_project()
    payload = {"name": "Foundations", "phase_code": "fnd", "sequence": 1}
    phase_service.create_phase(db_session, owner, project.id, payload)

    with pytest.raises(ConflictError) as excinfo:
        phase_service.create_phase(db_session, owner, project.id, {**payload, "sequence": 2})

    assert excinfo.value.extra["field"] == "phase_code"


def test_dependency_cycles_are_rejected(db_session, owner, create_project, create_phase):
    project = create_project()
    first = create_phase(project)
    second = create_phase(project, depends_on=[first.id])
    third = create_phase(project, depends_on=[second.id])

    with pytest.raises(ValidationError) as excinfo:
        phase_service.set_phase_dependencies(db_session, owner, first.id, [third.id])
    assert "cycle" in excinfo.value.detail

    with pytest.raises(ValidationError):
        phase_service.set_phase_dependencies(db_session, owner, first.id, [first.id])


def test_dependencies_must_share_a_project(db_session, owner, create_project, create_phase):
    phase = create_phase(create_project())
    other = create_phase(create_project())

    with pytest.raises(ValidationError):
        phase_service.set_phase_dependencies(db_session, owner, phase.id, [other.id])


def test_phase_cannot_start_before_dependencies_complete(db_session, owner, create_project, create_phase):
    project = create_project()
    first = create_phase(project)
    phase_service.update_phase_schedule(
        db_session,
        owner,
        first.id,
        {"planned_start_date": date(2030, 1, 1), "planned_end_date": date(2030, 3, 31)},
    )
    second = create_phase(project, depends_on=[first.id])
    assert second.can_start_after == date(2030, 3, 31)

    readiness = phase_service.can_phase_start(db_session, second.id)
    assert not readiness["can_start"]
    assert readiness["blocking_phases"][0]["id"] == first.id

    with pytest.raises(ValidationError):
        phase_service.update_phase_schedule(db_session, owner, second.id, {"status": "in_progress"})

    phase_service.update_phase_schedule(
        db_session, owner, first.id, {"status": "completed", "actual_end_date": date(2030, 3, 15)}
    )
    db_session.refresh(second)
    assert second.can_start_after == date(2030, 3, 15)
    started = phase_service.update_phase_schedule(db_session, owner, second.id, {"status": "in_progress"})
    assert started.status == "in_progress"


def test_shrinking_dcc_below_allocations_requires_reallocation(db_session, owner, create_project, create_phase):
    project = create_project()
    phase = create_phase(project, allocation=Decimal("400000"))
    smaller = {
        "total": Decimal("600000"),
        "direct_construction_costs": Decimal("400000"),
        "pre_construction_costs": Decimal("50000"),
        "indirect_costs": Decimal("50000"),
        "contingency_reserve": Decimal("100000"),
    }
    tighter = {**smaller, "direct_construction_costs": Decimal("200000"), "total": Decimal("400000")}

    project_service.update_project_budget(db_session, owner, project.id, smaller)
    with pytest.raises(ValidationError):
        project_service.update_project_budget(db_session, owner, project.id, tighter)

    _, warnings = project_service.update_project_budget(
        db_session, owner, project.id, tighter, reallocate_phases=True
    )

    db_session.refresh(phase)
    assert phase.allocation_total == Decimal("200000.00")
    assert any("Rescaled 1 phase" in warning for warning in warnings)


def test_finalising_budget_below_bootstrap_allocations_is_rejected(
    db_session, owner, create_project, create_phase
):
    project = create_project(budget={"total": Decimal("0")})
    first = create_phase(project)
    second = create_phase(project)
    phase_service.allocate_phase_budget(db_session, owner, first.id, {"total": Decimal("600000")})
    phase_service.allocate_phase_budget(db_session, owner, second.id, {"total": Decimal("500000")})
    final = {
        "total": Decimal("1000000"),
        "direct_construction_costs": Decimal("800000"),
        "pre_construction_costs": Decimal("50000"),
        "indirect_costs": Decimal("50000"),
        "contingency_reserve": Decimal("100000"),
    }

    with pytest.raises(ValidationError) as excinfo:
        project_service.update_project_budget(db_session, owner, project.id, final, reallocate_phases=True)

    assert excinfo.value.extra["allocated_to_phases"] == Decimal("1100000.00")
    db_session.refresh(project)
    assert project.budget_direct_construction == Decimal("0.00")

    roomy = {**final, "total": Decimal("1300000"), "direct_construction_costs": Decimal("1100000")}
    project_service.update_project_budget(db_session, owner, project.id, roomy, reallocate_phases=True)
    db_session.refresh(project)
    assert project.budget_direct_construction == Decimal("1100000.00")


def test_material_budget_check_only_warns(db_session, owner, create_project, create_phase):
    project = create_project()
    phase = create_phase(project)
    unallocated = create_phase(project)
    phase_service.allocate_phase_budget(
        db_session, owner, phase.id, {"total": Decimal("10000"), "materials": Decimal("2000")}
    )

    over = phase_service.validate_phase_material_budget(db_session, phase.id, Decimal("2500"))
    within = phase_service.validate_phase_material_budget(db_session, phase.id, Decimal("1500"))

    assert over["is_within_budget"] is False
    assert "available: 2000, required: 2500" in over["warning"]
    assert within == {"is_within_budget": True, "available": Decimal("2000.00"), "warning": None}
    assert phase_service.validate_phase_material_budget(db_session, unallocated.id, 1)["warning"] is None
    assert phase_service.validate_phase_material_budget(db_session, None, 1)["is_within_budget"] is True

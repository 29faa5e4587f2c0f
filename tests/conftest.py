import sys
from collections.abc import Callable, Generator
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from costcontrol.config import Base  # noqa: E402
import costcontrol.config as app_config  # noqa: E402
import costcontrol.main as app_main  # noqa: E402
# Import the full models module so every table registers with Base metadata.
from costcontrol.models import models as _all_models  # noqa: E402,F401
from costcontrol.models.models import Phase, Project, Supplier, User  # noqa: E402
from costcontrol.services import investors as investor_service  # noqa: E402
from costcontrol.services import material_requests as request_service  # noqa: E402
from costcontrol.services import phases as phase_service  # noqa: E402
from costcontrol.services import projects as project_service  # noqa: E402
from costcontrol.services.consistency import commitment_guard  # noqa: E402
from costcontrol.services.recalculation_queue import recalculation_queue  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Configure the app-wide SessionLocal/engine so TestClient uses a DB with all tables."""
    db_dir = tmp_path_factory.mktemp("globaldb")
    db_path = db_dir / "app.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    app_config.SessionLocal = SessionLocal
    app_config.engine = engine
    app_main.SessionLocal = SessionLocal
    app_main.engine = engine
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def _inline_recalculation():
    """Run cascades on the caller's session so tests observe them immediately."""
    recalculation_queue.configure(mode="inline")
    recalculation_queue.failures.clear()
    commitment_guard.mode = "advisory"
    yield
    commitment_guard.mode = "advisory"


@pytest.fixture
def db_session(tmp_path) -> Generator[Session, None, None]:
    """Provide a fresh SQLite database for each test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def create_user(db_session: Session) -> Callable[[str, Optional[str]], User]:
    def _create(email: str = "user@example.com", role_name: str = "OWNER") -> User:
        user = User(email=email, full_name=email.split("@")[0], role=role_name, is_active=True)
        db_session.add(user)
        db_session.commit()
        return user

    return _create


@pytest.fixture
def owner(create_user) -> User:
    return create_user(email="owner@example.com", role_name="OWNER")


@pytest.fixture
def create_project(db_session: Session, owner: User) -> Callable[..., Project]:
    counter = {"value": 0}

    def _create(budget: Optional[dict] = None, code: Optional[str] = None) -> Project:
        counter["value"] += 1
        payload = {
            "project_code": code or f"PRJ-{counter['value']:03d}",
            "name": f"Project {counter['value']}",
            "budget": budget
            or {
                "total": Decimal("1000000"),
                "direct_construction_costs": Decimal("800000"),
                "pre_construction_costs": Decimal("50000"),
                "indirect_costs": Decimal("50000"),
                "contingency_reserve": Decimal("100000"),
            },
        }
        project, _ = project_service.create_project(db_session, owner, payload)
        return project

    return _create


@pytest.fixture
def create_phase(db_session: Session, owner: User) -> Callable[..., Phase]:
    counter = {"value": 0}

    def _create(project: Project, allocation: Optional[Decimal] = None, depends_on=None) -> Phase:
        counter["value"] += 1
        phase = phase_service.create_phase(
            db_session,
            owner,
            project.id,
            {
                "name": f"Phase {counter['value']}",
                "phase_code": f"PH-{counter['value']:02d}",
                "sequence": counter["value"],
                "depends_on": depends_on or [],
            },
        )
        if allocation is not None:
            phase_service.allocate_phase_budget(db_session, owner, phase.id, {"total": allocation})
        return phase

    return _create


@pytest.fixture
def create_supplier(db_session: Session) -> Callable[..., Supplier]:
    def _create(name: str = "Acme Building Supply", status: str = "active") -> Supplier:
        supplier = Supplier(name=name, email="orders@acme.example.com", status=status)
        db_session.add(supplier)
        db_session.commit()
        return supplier

    return _create


@pytest.fixture
def fund_project(db_session: Session, owner: User) -> Callable[..., object]:
    def _fund(project: Project, amount, investment_type: str = "equity", name: str = "Seed Capital"):
        investor = investor_service.create_investor(db_session, owner, {"name": name})
        return investor_service.allocate_capital(
            db_session,
            owner,
            investor.id,
            {"project_id": project.id, "amount": Decimal(str(amount)), "investment_type": investment_type},
        )

    return _fund


@pytest.fixture
def approved_request(db_session: Session, owner: User) -> Callable[..., object]:
    def _create(project: Project, quantity, unit_cost, phase: Optional[Phase] = None, name: str = "Cement"):
        request = request_service.create_material_request(
            db_session,
            owner,
            project.id,
            {
                "phase_id": phase.id if phase else None,
                "material_name": name,
                "unit": "bag",
                "quantity_needed": Decimal(str(quantity)),
                "estimated_unit_cost": Decimal(str(unit_cost)),
            },
        )
        return request_service.approve_material_request(db_session, owner, request.id)

    return _create

"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database with savepoint isolation (rollback after each test)
- Two organizations with one member per role
- A FieldCipher with fixed test keys
- Factories for patients and treatment plans
"""
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Keep the application engine off the local database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

from aba_core.core.config import BreachThresholds, EncryptionConfig
from aba_core.core.encryption import FieldCipher
from aba_core.core.phi import encrypt_fields
from aba_core.db.base import Base
from aba_core.db.enums import MembershipStatus, PlanStatus, Role
from aba_core.db.models import Membership, Organization, Patient, TreatmentPlan, User
from aba_core.schemas.auth import Caller
from aba_core.schemas.patient import PatientPHI


TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_HMAC_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite manages transactions itself and breaks SAVEPOINT; take over
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    """
    Session joined to an outer transaction that is rolled back at the end.

    Service code may call commit(); each commit only releases a savepoint.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Tenancy Fixtures
# =============================================================================

@dataclass
class Staff:
    """One organization and a member per role."""

    org: Organization
    admin: User
    manager: User
    bcba: User
    other_bcba: User
    rbt: User
    bt: User
    hr: User
    roles: dict[int, Role] = field(default_factory=dict)

    def caller(self, user: User) -> Caller:
        return Caller(
            user_id=user.id,
            role=self.roles[user.id],
            organization_id=self.org.id,
        )


def add_member(db: Session, org: Organization, role: Role | str, name: str) -> User:
    user = User(
        email=f"{name}-{org.slug}@example.com",
        first_name=name.title(),
        last_name="Tester",
    )
    db.add(user)
    db.flush()
    db.add(Membership(
        user_id=user.id,
        organization_id=org.id,
        role=role.value if isinstance(role, Role) else role,
        status=MembershipStatus.ACTIVE.value,
    ))
    db.flush()
    return user


def _seed_staff(db: Session, slug: str) -> Staff:
    org = Organization(name=f"Clinic {slug}", slug=slug)
    db.add(org)
    db.flush()

    members = {
        "admin": Role.ORG_ADMIN,
        "manager": Role.CLINICAL_MANAGER,
        "bcba": Role.BCBA,
        "other_bcba": Role.BCBA,
        "rbt": Role.RBT,
        "bt": Role.BT,
        "hr": Role.HR_MANAGER,
    }
    users = {name: add_member(db, org, role, name) for name, role in members.items()}
    staff = Staff(org=org, **users)
    staff.roles = {users[name].id: role for name, role in members.items()}
    return staff


@pytest.fixture
def staff(db) -> Staff:
    """Organization A with one member per role."""
    return _seed_staff(db, "clinic-a")


@pytest.fixture
def other_staff(db) -> Staff:
    """Organization B, for tenant isolation checks."""
    return _seed_staff(db, "clinic-b")


@pytest.fixture
def add_staff(db):
    """Add one more member to an organization: add_staff(org, role, name)."""

    def _add(org: Organization, role: Role | str, name: str) -> User:
        return add_member(db, org, role, name)

    return _add


# =============================================================================
# Encryption Fixtures
# =============================================================================

@pytest.fixture
def encryption_config() -> EncryptionConfig:
    return EncryptionConfig.from_hex(TEST_ENCRYPTION_KEY, TEST_HMAC_KEY)


@pytest.fixture
def cipher(encryption_config) -> FieldCipher:
    return FieldCipher(encryption_config)


@pytest.fixture
def thresholds() -> BreachThresholds:
    return BreachThresholds()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_patient(db, cipher):
    """Create a patient row directly (bypasses the service layer)."""

    def _make(
        org: Organization,
        bcba: User | None = None,
        rbt: User | None = None,
        first_name: str = "Ada",
        last_name: str = "Lovelace",
    ) -> Patient:
        phi = PatientPHI(
            first_name=first_name,
            last_name=last_name,
            date_of_birth=date(2016, 5, 4),
        )
        patient = Patient(
            organization_id=org.id,
            assigned_bcba_id=bcba.id if bcba else None,
            assigned_rbt_id=rbt.id if rbt else None,
            **encrypt_fields(cipher, phi),
        )
        db.add(patient)
        db.flush()
        return patient

    return _make


@pytest.fixture
def make_plan(db):
    """Create a treatment plan row directly with a given status label."""

    def _make(
        patient: Patient,
        created_by: User,
        status: PlanStatus | str = PlanStatus.DRAFT,
        title: str = "Initial plan",
    ) -> TreatmentPlan:
        plan = TreatmentPlan(
            organization_id=patient.organization_id,
            patient_id=patient.id,
            title=title,
            status=status.value if isinstance(status, PlanStatus) else status,
            created_by_id=created_by.id,
            goals=[],
            workflow_history=[],
        )
        db.add(plan)
        db.flush()
        return plan

    return _make

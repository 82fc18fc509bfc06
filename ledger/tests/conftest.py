import pytest

from ledger.config import Settings
from ledger.engine import build_engine
from ledger.models import ActorRole, AwardRequest, TransactionCategory
from ledger.storage import (
    DEMO_ADMIN_ID,
    DEMO_STUDENT_IDS,
    DEMO_TEACHER_ID,
    InMemoryStorage,
)


STUDENT_ID = DEMO_STUDENT_IDS[0]


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def engine(storage, settings):
    return build_engine(storage=storage, settings=settings)


@pytest.fixture
def admin(engine):
    return engine.ledger.resolve_actor(DEMO_ADMIN_ID)


@pytest.fixture
def teacher(engine):
    return engine.ledger.resolve_actor(DEMO_TEACHER_ID)


@pytest.fixture
def outsider(engine, storage):
    """An admin of a second tenant."""
    other_tenant = storage.register_tenant("Other School")
    staff_id = storage.register_staff(other_tenant, "Olga Other", ActorRole.ADMIN)
    return engine.ledger.resolve_actor(staff_id)


@pytest.fixture
def award(engine, teacher):
    """Commit a small award through the approval workflow and return the transaction."""
    def _award(points=10, coins=0, student_id=STUDENT_ID, reason="Good work",
               category=TransactionCategory.HOMEWORK):
        result = engine.approvals.propose(teacher, AwardRequest(
            student_id=student_id, points=points, coins=coins, reason=reason, category=category,
        ))
        return result.transaction
    return _award

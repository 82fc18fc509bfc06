import itertools
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Iterable, Optional
from uuid import UUID, uuid4

from .exceptions import NotFoundError, VersionConflictError
from .models import ActorRole


TABLES = (
    "transactions",
    "aggregates",
    "approvals",
    "achievements",
    "student_achievements",
    "rewards",
    "redemptions",
    "campaigns",
    "referrals",
)

DEMO_TENANT_ID = UUID("0f0e0d0c-0000-4000-8000-000000000001")
DEMO_ADMIN_ID = UUID("a0000000-0000-4000-8000-000000000001")
DEMO_TEACHER_ID = UUID("a0000000-0000-4000-8000-000000000002")
DEMO_STUDENT_IDS = (
    UUID("50000000-0000-4000-8000-000000000001"),
    UUID("50000000-0000-4000-8000-000000000002"),
)


def student_key(tenant_id: UUID, student_id: UUID) -> tuple:
    return ("student", tenant_id, student_id)


class InMemoryStorage:
    """Tables of plain dict rows plus the entity directories the ledger references.

    Rows are never mutated in place: writers build a new dict and stage it
    through a UnitOfWork, which publishes all of its rows at once.
    """

    def __init__(self, seed: bool = True):
        self.tenants: dict[UUID, dict] = {}
        self.students: dict[UUID, dict] = {}
        self.staff: dict[UUID, dict] = {}
        self.tables: dict[str, dict[Hashable, dict]] = {name: {} for name in TABLES}
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.register_tenant("Demo School", tenant_id=DEMO_TENANT_ID)
        self.register_staff(DEMO_TENANT_ID, "Ada Admin", ActorRole.ADMIN, staff_id=DEMO_ADMIN_ID)
        self.register_staff(DEMO_TENANT_ID, "Tom Teacher", ActorRole.TEACHER, staff_id=DEMO_TEACHER_ID)
        self.register_student(DEMO_TENANT_ID, "Sam Student", student_id=DEMO_STUDENT_IDS[0])
        self.register_student(DEMO_TENANT_ID, "Rita Referrer", student_id=DEMO_STUDENT_IDS[1])

    # --- directories ------------------------------------------------------

    def register_tenant(self, name: str, tenant_id: Optional[UUID] = None) -> UUID:
        tenant_id = tenant_id or uuid4()
        self.tenants[tenant_id] = {"id": tenant_id, "name": name, "created_at": utcnow()}
        return tenant_id

    def register_student(
        self,
        tenant_id: UUID,
        name: str,
        student_id: Optional[UUID] = None,
        created_at: Optional[datetime] = None,
    ) -> UUID:
        self.require_tenant(tenant_id)
        student_id = student_id or uuid4()
        self.students[student_id] = {
            "id": student_id, "tenant_id": tenant_id, "name": name,
            "created_at": created_at or utcnow(),
        }
        return student_id

    def register_staff(
        self, tenant_id: UUID, name: str, role: ActorRole, staff_id: Optional[UUID] = None
    ) -> UUID:
        self.require_tenant(tenant_id)
        staff_id = staff_id or uuid4()
        self.staff[staff_id] = {"id": staff_id, "tenant_id": tenant_id, "name": name, "role": role}
        return staff_id

    def require_tenant(self, tenant_id: UUID) -> dict:
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def require_student(self, tenant_id: UUID, student_id: UUID) -> dict:
        self.require_tenant(tenant_id)
        student = self.students.get(student_id)
        if student is None or student["tenant_id"] != tenant_id:
            raise NotFoundError(f"Student {student_id} not found in tenant {tenant_id}")
        return student

    def students_in(self, tenant_id: UUID) -> list[dict]:
        return [s for s in self.students.values() if s["tenant_id"] == tenant_id]

    # --- concurrency ------------------------------------------------------

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    def next_sequence(self) -> int:
        with self._sequence_lock:
            return next(self._sequence)

    def unit_of_work(self, keys: Iterable[Hashable] = ()) -> "UnitOfWork":
        return UnitOfWork(self, keys)

    def snapshot(self, table: str) -> list[dict]:
        """Committed rows only; never observes a half-published unit of work."""
        with self._commit_lock:
            return list(self.tables[table].values())

    def get(self, table: str, key: Hashable) -> Optional[dict]:
        with self._commit_lock:
            return self.tables[table].get(key)


_MISSING = object()


class UnitOfWork:
    """One atomic unit spanning every table.

    Writes are staged in a private overlay and published together on a clean
    exit; any exception discards the overlay. Rows staged with an expected
    version are compare-and-swapped at publish time. Per-key locks are taken
    in a stable order on entry so units touching the same student serialize.
    """

    def __init__(self, storage: InMemoryStorage, keys: Iterable[Hashable] = ()):
        self.storage = storage
        self._keys = sorted(set(keys), key=repr)
        self._held: list[threading.RLock] = []
        self._writes: dict[tuple[str, Hashable], dict] = {}
        self._expected: dict[tuple[str, Hashable], int] = {}
        self._after_commit: list[Callable[[], None]] = []
        self.committed = False

    def __enter__(self) -> "UnitOfWork":
        for key in self._keys:
            lock = self.storage.lock_for(key)
            lock.acquire()
            self._held.append(lock)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self._publish()
        finally:
            for lock in reversed(self._held):
                lock.release()
            self._held.clear()
        if exc_type is None:
            for callback in self._after_commit:
                callback()
        return False

    def get(self, table: str, key: Hashable) -> Optional[dict]:
        staged = self._writes.get((table, key), _MISSING)
        if staged is not _MISSING:
            return staged
        return self.storage.get(table, key)

    def rows(self, table: str) -> list[dict]:
        merged = {row_key: row for row_key, row in self._committed_items(table)}
        for (name, row_key), row in self._writes.items():
            if name == table:
                merged[row_key] = row
        return list(merged.values())

    def put(self, table: str, key: Hashable, row: dict, expected_version: Optional[int] = None):
        self._writes[(table, key)] = row
        if expected_version is not None and (table, key) not in self._expected:
            self._expected[(table, key)] = expected_version

    def after_commit(self, callback: Callable[[], None]):
        self._after_commit.append(callback)

    def _committed_items(self, table: str) -> list[tuple[Hashable, dict]]:
        with self.storage._commit_lock:
            return list(self.storage.tables[table].items())

    def _publish(self):
        with self.storage._commit_lock:
            for (table, key), expected in self._expected.items():
                current = self.storage.tables[table].get(key)
                current_version = current["version"] if current else 0
                if current_version != expected:
                    raise VersionConflictError(
                        f"{table} row {key} is at version {current_version}, expected {expected}"
                    )
            for (table, key), row in self._writes.items():
                self.storage.tables[table][key] = row
            self.committed = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def copy_row(row: dict, **changes: Any) -> dict:
    updated = dict(row)
    updated.update(changes)
    return updated

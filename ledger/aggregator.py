import logging
from typing import Optional
from uuid import UUID

from .config import Settings
from .exceptions import InsufficientBalanceError, ValidationError
from .models import Divergence, RankingAggregate, ReplayResult
from .storage import InMemoryStorage, UnitOfWork, student_key, utcnow
from .store import LedgerStore

logger = logging.getLogger(__name__)


class BalanceAggregator:
    """Keeps the cached per-student ranking row in step with the ledger.

    The row is a cache of LedgerStore.replay(); every write stages it with the
    version it was read at, so a concurrent writer that slipped past the
    per-student lock surfaces as a VersionConflictError at publish time.
    """

    def __init__(self, storage: InMemoryStorage, store: LedgerStore, settings: Settings):
        self.storage = storage
        self.store = store
        self.settings = settings

    def compute_level(self, total_points: int) -> int:
        if total_points <= 0:
            return 1
        return total_points // self.settings.LEVEL_SIZE_POINTS + 1

    def get(self, tenant_id: UUID, student_id: UUID, uow: Optional[UnitOfWork] = None) -> RankingAggregate:
        key = (tenant_id, student_id)
        row = uow.get("aggregates", key) if uow else self.storage.get("aggregates", key)
        if row is None:
            return RankingAggregate(student_id=student_id, tenant_id=tenant_id)
        return RankingAggregate(**row)

    def apply_delta(
        self,
        uow: UnitOfWork,
        student_id: UUID,
        tenant_id: UUID,
        points_delta: int,
        coins_delta: int,
        spent_delta: int = 0,
    ) -> RankingAggregate:
        current = self.get(tenant_id, student_id, uow)

        total_points = current.total_points + points_delta
        available_coins = current.available_coins + coins_delta
        if available_coins < 0:
            raise InsufficientBalanceError(
                f"Student {student_id} has {current.available_coins} coins, cannot apply {coins_delta}"
            )
        if total_points < 0:
            raise ValidationError(
                f"Student {student_id} has {current.total_points} points, cannot apply {points_delta}"
            )

        now = utcnow()
        row = {
            "student_id": student_id,
            "tenant_id": tenant_id,
            "total_points": total_points,
            "available_coins": available_coins,
            "spent_coins": current.spent_coins + spent_delta,
            "current_level": self.compute_level(total_points),
            "version": current.version + 1,
            "last_activity_at": now,
            "updated_at": now,
        }
        uow.put("aggregates", (tenant_id, student_id), row, expected_version=current.version)
        return RankingAggregate(**row)

    def rebuild(self, uow: UnitOfWork, tenant_id: UUID, student_id: UUID) -> RankingAggregate:
        """Rewrite the cached row from a full replay inside the caller's unit."""
        current = self.get(tenant_id, student_id, uow)
        replayed = self.store.replay(tenant_id, student_id, uow)
        row = {
            "student_id": student_id,
            "tenant_id": tenant_id,
            "total_points": replayed.total_points,
            "available_coins": replayed.available_coins,
            "spent_coins": replayed.spent_coins,
            "current_level": self.compute_level(replayed.total_points),
            "version": current.version + 1,
            "last_activity_at": current.last_activity_at,
            "updated_at": utcnow(),
        }
        uow.put("aggregates", (tenant_id, student_id), row, expected_version=current.version)
        return RankingAggregate(**row)

    def reconcile(self, tenant_id: UUID, repair: bool = False) -> list[Divergence]:
        divergences = []
        for student in self.storage.students_in(tenant_id):
            student_id = student["id"]
            with self.storage.unit_of_work([student_key(tenant_id, student_id)]) as uow:
                cached = self.get(tenant_id, student_id, uow)
                replayed = self.store.replay(tenant_id, student_id, uow)
                if (
                    cached.total_points == replayed.total_points
                    and cached.available_coins == replayed.available_coins
                    and cached.spent_coins == replayed.spent_coins
                ):
                    continue

                logger.warning(
                    "Aggregate divergence for student %s: cached=%s/%s/%s replayed=%s/%s/%s",
                    student_id,
                    cached.total_points, cached.available_coins, cached.spent_coins,
                    replayed.total_points, replayed.available_coins, replayed.spent_coins,
                )
                if repair:
                    self.rebuild(uow, tenant_id, student_id)
                divergences.append(Divergence(
                    student_id=student_id,
                    cached=ReplayResult(
                        total_points=cached.total_points,
                        available_coins=cached.available_coins,
                        spent_coins=cached.spent_coins,
                        transaction_count=replayed.transaction_count,
                    ),
                    replayed=replayed,
                    repaired=repair,
                ))
        return divergences

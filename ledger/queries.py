from collections import Counter
from typing import Optional
from uuid import UUID

from .achievements import AchievementEngine
from .approvals import ApprovalWorkflow
from .exceptions import NotFoundError, ValidationError
from .models import (
    ApprovalDecision,
    ApprovalPriority,
    Leaderboard,
    LeaderboardEntry,
    PendingApproval,
    StudentStats,
    TenantStats,
    TransactionFilters,
    TransactionHistoryResponse,
    TransactionKind,
)
from .referrals import ReferralFunnel
from .service import LedgerService


class RankingQueryService:
    """Read-only projections for clients.

    Ranks are dense (ties share a position, no gaps), ordered by total points
    descending and then by how long the student has been enrolled. They are
    computed from one committed snapshot per call and never stored.
    """

    def __init__(
        self,
        ledger: LedgerService,
        achievements: AchievementEngine,
        referrals: ReferralFunnel,
        approvals: ApprovalWorkflow,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.achievements = achievements
        self.referrals = referrals
        self.approvals = approvals

    def leaderboard(self, tenant_id: UUID, limit: Optional[int] = None, offset: int = 0) -> Leaderboard:
        self.storage.require_tenant(tenant_id)
        entries = self._ranked(tenant_id)
        window = entries[offset:offset + limit] if limit is not None else entries[offset:]
        return Leaderboard(tenant_id=tenant_id, entries=window, total_count=len(entries))

    def rank_of(self, tenant_id: UUID, student_id: UUID) -> int:
        self.storage.require_student(tenant_id, student_id)
        for entry in self._ranked(tenant_id):
            if entry.student_id == student_id:
                return entry.rank
        raise NotFoundError(f"Student {student_id} is not ranked in tenant {tenant_id}")

    def history(
        self,
        tenant_id: UUID,
        student_id: UUID,
        page: int = 1,
        page_size: Optional[int] = None,
        filters: Optional[TransactionFilters] = None,
    ) -> TransactionHistoryResponse:
        self.storage.require_student(tenant_id, student_id)
        page_size = page_size or self.ledger.settings.HISTORY_PAGE_SIZE
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        entries = self.ledger.store.list_by_student(tenant_id, student_id, filters)
        entries.reverse()
        start = (page - 1) * page_size
        return TransactionHistoryResponse(
            student_id=student_id,
            entries=entries[start:start + page_size],
            total_count=len(entries),
            page=page,
            page_size=page_size,
        )

    def pending_queue(
        self, tenant_id: UUID, priority: Optional[ApprovalPriority] = None
    ) -> list[PendingApproval]:
        self.storage.require_tenant(tenant_id)
        return self.approvals.list_pending(tenant_id, priority)

    def student_stats(self, tenant_id: UUID, student_id: UUID) -> StudentStats:
        aggregate = self.ledger.get_aggregate(tenant_id, student_id)
        level_size = self.ledger.settings.LEVEL_SIZE_POINTS
        next_level_at = aggregate.current_level * level_size
        return StudentStats(
            student_id=student_id,
            tenant_id=tenant_id,
            total_points=aggregate.total_points,
            available_coins=aggregate.available_coins,
            spent_coins=aggregate.spent_coins,
            current_level=aggregate.current_level,
            rank=self.rank_of(tenant_id, student_id),
            points_to_next_level=max(next_level_at - aggregate.total_points, 0),
            transaction_count=len(self.ledger.store.list_by_student(tenant_id, student_id)),
            achievements=self.achievements.list_for_student(tenant_id, student_id),
            referrals=self.referrals.summary(tenant_id, student_id),
        )

    def tenant_stats(self, tenant_id: UUID) -> TenantStats:
        self.storage.require_tenant(tenant_id)
        rows = [
            row for row in self.storage.snapshot("transactions")
            if row["tenant_id"] == tenant_id and row["deleted_at"] is None
        ]

        points_by_category: Counter = Counter()
        for row in rows:
            points_by_category[row["category"].value] += row["points_delta"]

        pending = sum(
            1 for row in self.storage.snapshot("approvals")
            if row["tenant_id"] == tenant_id and row["decision"] == ApprovalDecision.PENDING
        )
        return TenantStats(
            tenant_id=tenant_id,
            student_count=len(self.storage.students_in(tenant_id)),
            transaction_count=len(rows),
            points_awarded=sum(r["points_delta"] for r in rows if r["points_delta"] > 0),
            points_deducted=-sum(r["points_delta"] for r in rows if r["points_delta"] < 0),
            coins_awarded=sum(
                r["coins_delta"] for r in rows
                if r["coins_delta"] > 0 and r["kind"] != TransactionKind.REDEMPTION
            ),
            coins_spent=-sum(r["coins_delta"] for r in rows if r["kind"] == TransactionKind.REDEMPTION),
            points_by_category=dict(points_by_category),
            pending_approvals=pending,
            referral_conversion_rate=self.referrals.conversion_rate(tenant_id),
        )

    def _ranked(self, tenant_id: UUID) -> list[LeaderboardEntry]:
        aggregates = {
            row["student_id"]: row for row in self.storage.snapshot("aggregates")
            if row["tenant_id"] == tenant_id
        }
        students = sorted(
            self.storage.students_in(tenant_id),
            key=lambda s: (-_points(aggregates.get(s["id"])), s["created_at"]),
        )

        entries = []
        rank = 0
        previous_points = None
        for student in students:
            aggregate = aggregates.get(student["id"])
            points = _points(aggregate)
            if points != previous_points:
                rank += 1
                previous_points = points
            entries.append(LeaderboardEntry(
                rank=rank,
                student_id=student["id"],
                student_name=student["name"],
                total_points=points,
                available_coins=aggregate["available_coins"] if aggregate else 0,
                current_level=aggregate["current_level"] if aggregate else 1,
            ))
        return entries


def _points(aggregate: Optional[dict]) -> int:
    return aggregate["total_points"] if aggregate else 0

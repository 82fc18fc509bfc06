import logging
from collections import Counter
from typing import Optional
from uuid import UUID, uuid4

from rules import Rule, RuleDefinitionError, RuleEngine, parse_predicate

from .events import EventType
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import (
    Achievement,
    Actor,
    CreateAchievementRequest,
    ReferralStatus,
    RelatedEntity,
    StudentAchievement,
    Transaction,
    TransactionCategory,
    TransactionDraft,
    TransactionKind,
    UpdateAchievementRequest,
)
from .service import LedgerService
from .storage import UnitOfWork, copy_row, student_key, utcnow

logger = logging.getLogger(__name__)

# Editing any of these after a student has earned the achievement would
# change the meaning of awards already in the ledger.
FROZEN_FIELDS = ("points_reward", "coins_reward", "criteria")


class AchievementEngine:
    """Unlocks achievements from ledger activity.

    Registered as a post-commit hook on the LedgerService. Each committed
    transaction triggers one evaluation pass for its student; the bonus
    transactions that pass produces do not trigger another pass.

    Predicates are written in the rules package's condition language against
    this context::

        total_points, available_coins, spent_coins, current_level,
        transaction_count, achievement_count,
        category_counts.<category>, category_points.<category>,
        referrals.enrolled, referrals.total,
        transaction.category, transaction.kind, transaction.points_delta
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage
        ledger.register_hook(self.on_commit)

    # --- catalog ----------------------------------------------------------

    def create(self, actor: Actor, request: CreateAchievementRequest) -> Achievement:
        self.ledger.authorize(actor, actor.tenant_id, elevated=True)
        if not request.name.strip():
            raise ValidationError("Achievement name is required")
        _check_criteria(request.criteria)

        achievement_id = uuid4()
        achievement_data = {
            "id": achievement_id,
            "tenant_id": actor.tenant_id,
            "name": request.name.strip(),
            "description": request.description,
            "points_reward": request.points_reward,
            "coins_reward": request.coins_reward,
            "criteria": request.criteria,
            "is_active": True,
            "is_automatic": request.is_automatic,
            "created_by": actor.id,
            "created_at": utcnow(),
            "updated_at": None,
        }
        with self.storage.unit_of_work([("achievement", achievement_id)]) as uow:
            uow.put("achievements", achievement_id, achievement_data)
        logger.info("Achievement %s (%s) created by %s", achievement_id, request.name, actor.id)
        return Achievement(**achievement_data)

    def update(self, actor: Actor, achievement_id: UUID, request: UpdateAchievementRequest) -> Achievement:
        current = self.get(achievement_id)
        self.ledger.authorize(actor, current.tenant_id, elevated=True)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if "criteria" in changes:
            _check_criteria(changes["criteria"])

        with self.storage.unit_of_work([("achievement", achievement_id)]) as uow:
            row = uow.get("achievements", achievement_id)
            frozen = [f for f in FROZEN_FIELDS if f in changes and changes[f] != row[f]]
            if frozen and self._has_been_earned(uow, achievement_id):
                raise ConflictError(
                    f"Achievement {achievement_id} has been earned; {', '.join(frozen)} can no longer change"
                )
            updated = copy_row(row, updated_at=utcnow(), **changes)
            uow.put("achievements", achievement_id, updated)
        return Achievement(**updated)

    def get(self, achievement_id: UUID) -> Achievement:
        row = self.storage.get("achievements", achievement_id)
        if row is None:
            raise NotFoundError(f"Achievement {achievement_id} not found")
        return Achievement(**row)

    def catalog(self, tenant_id: UUID, active_only: bool = False) -> list[Achievement]:
        achievements = [
            Achievement(**row) for row in self.storage.snapshot("achievements")
            if row["tenant_id"] == tenant_id and (row["is_active"] or not active_only)
        ]
        achievements.sort(key=lambda a: a.created_at)
        return achievements

    def list_for_student(self, tenant_id: UUID, student_id: UUID) -> list[StudentAchievement]:
        earned = [
            StudentAchievement(**row) for row in self.storage.snapshot("student_achievements")
            if row["tenant_id"] == tenant_id and row["student_id"] == student_id
        ]
        earned.sort(key=lambda a: a.earned_at)
        return earned

    # --- unlocking --------------------------------------------------------

    def on_commit(self, uow: UnitOfWork, transaction: Transaction) -> None:
        if transaction.related_entity_type == RelatedEntity.ACHIEVEMENT:
            return
        self.evaluate(uow, transaction.tenant_id, transaction.student_id, trigger=transaction)

    def evaluate(
        self,
        uow: UnitOfWork,
        tenant_id: UUID,
        student_id: UUID,
        trigger: Optional[Transaction] = None,
    ) -> list[StudentAchievement]:
        earned_ids = {
            row["achievement_id"] for row in uow.rows("student_achievements")
            if row["tenant_id"] == tenant_id and row["student_id"] == student_id
        }
        candidates = {
            str(row["id"]): Achievement(**row) for row in uow.rows("achievements")
            if row["tenant_id"] == tenant_id
            and row["is_active"]
            and row["is_automatic"]
            and row["criteria"]
            and row["id"] not in earned_ids
        }
        if not candidates:
            return []

        engine = RuleEngine([
            Rule(id=key, name=a.name, predicate=parse_predicate(a.criteria))
            for key, a in candidates.items()
        ])
        # One context for the whole pass: unlocks in this pass cannot feed each other.
        context = self.build_context(uow, tenant_id, student_id, trigger)
        return [
            self._grant(uow, candidates[rule.id], student_id, candidates[rule.id].created_by, None)
            for rule in engine.evaluate(context)
        ]

    def award_manually(
        self, actor: Actor, student_id: UUID, achievement_id: UUID, notes: Optional[str] = None
    ) -> StudentAchievement:
        achievement = self.get(achievement_id)
        self.ledger.authorize(actor, achievement.tenant_id, elevated=True)
        self.storage.require_student(achievement.tenant_id, student_id)
        if not achievement.is_active:
            raise ValidationError(f"Achievement {achievement_id} is not active")

        return self.ledger.atomic(
            [student_key(achievement.tenant_id, student_id)],
            lambda uow: self._grant(uow, achievement, student_id, actor.id, notes),
        )

    def build_context(
        self,
        uow: UnitOfWork,
        tenant_id: UUID,
        student_id: UUID,
        trigger: Optional[Transaction] = None,
    ) -> dict:
        aggregate = self.ledger.aggregator.get(tenant_id, student_id, uow)
        history = self.ledger.store.list_by_student(tenant_id, student_id, uow=uow)

        category_counts: Counter = Counter()
        category_points: Counter = Counter()
        for entry in history:
            category_counts[entry.category.value] += 1
            category_points[entry.category.value] += entry.points_delta

        referrals = [
            row for row in uow.rows("referrals")
            if row["tenant_id"] == tenant_id and row["referrer_student_id"] == student_id
        ]
        achievement_count = sum(
            1 for row in uow.rows("student_achievements")
            if row["tenant_id"] == tenant_id and row["student_id"] == student_id
        )

        context = {
            "total_points": aggregate.total_points,
            "available_coins": aggregate.available_coins,
            "spent_coins": aggregate.spent_coins,
            "current_level": aggregate.current_level,
            "transaction_count": len(history),
            "achievement_count": achievement_count,
            "category_counts": dict(category_counts),
            "category_points": dict(category_points),
            "referrals": {
                "total": len(referrals),
                "enrolled": sum(1 for r in referrals if r["status"] == ReferralStatus.ENROLLED),
            },
        }
        if trigger is not None:
            context["transaction"] = {
                "category": trigger.category.value,
                "kind": trigger.kind.value,
                "points_delta": trigger.points_delta,
                "coins_delta": trigger.coins_delta,
            }
        return context

    def _grant(
        self,
        uow: UnitOfWork,
        achievement: Achievement,
        student_id: UUID,
        awarded_by: UUID,
        notes: Optional[str],
    ) -> StudentAchievement:
        key = (achievement.tenant_id, student_id, achievement.id)
        if uow.get("student_achievements", key) is not None:
            raise ConflictError(f"Student {student_id} already holds achievement {achievement.id}")

        transaction = None
        if achievement.points_reward or achievement.coins_reward:
            transaction = self.ledger.commit(uow, TransactionDraft(
                student_id=student_id,
                tenant_id=achievement.tenant_id,
                kind=TransactionKind.BONUS,
                points_delta=achievement.points_reward,
                coins_delta=achievement.coins_reward,
                reason=f"Achievement unlocked: {achievement.name}",
                category=TransactionCategory.ACHIEVEMENT,
                awarded_by=awarded_by,
                related_entity_type=RelatedEntity.ACHIEVEMENT,
                related_entity_id=achievement.id,
            ))

        earned_data = {
            "id": uuid4(),
            "tenant_id": achievement.tenant_id,
            "student_id": student_id,
            "achievement_id": achievement.id,
            "points_awarded": achievement.points_reward,
            "coins_awarded": achievement.coins_reward,
            "transaction_id": transaction.id if transaction else None,
            "awarded_by": awarded_by,
            "notes": notes,
            "earned_at": utcnow(),
        }
        uow.put("student_achievements", key, earned_data)

        def _announce():
            logger.info("Student %s unlocked achievement %s", student_id, achievement.name)
            self.ledger.emit(EventType.ACHIEVEMENT_UNLOCKED, achievement.tenant_id, {
                "student_id": str(student_id),
                "achievement_id": str(achievement.id),
                "name": achievement.name,
            })

        uow.after_commit(_announce)
        return StudentAchievement(**earned_data)

    def _has_been_earned(self, uow: UnitOfWork, achievement_id: UUID) -> bool:
        return any(row["achievement_id"] == achievement_id for row in uow.rows("student_achievements"))


def _check_criteria(criteria: dict) -> None:
    if not criteria:
        return
    try:
        parse_predicate(criteria)
    except (RuleDefinitionError, KeyError, TypeError) as e:
        raise ValidationError(f"Invalid achievement criteria: {e}") from e

import logging
from typing import Callable, Hashable, Iterable, Optional, TypeVar
from uuid import UUID

from .aggregator import BalanceAggregator
from .config import Settings, get_settings
from .events import DomainEvent, EventBus, EventType
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    PermissionDeniedError,
    ValidationError,
    VersionConflictError,
)
from .models import (
    Actor,
    RankingAggregate,
    RelatedEntity,
    ReplayResult,
    Transaction,
    TransactionDraft,
    TransactionKind,
    Divergence,
)
from .storage import InMemoryStorage, UnitOfWork, student_key
from .store import LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
PostCommitHook = Callable[[UnitOfWork, Transaction], None]


class LedgerService:
    """Owns the one hard transactional boundary: ledger append plus aggregate update.

    commit() stages both writes in the caller's UnitOfWork and then runs the
    registered post-commit hooks synchronously in that same unit, so anything
    a hook writes (an achievement bonus, say) lands or rolls back together
    with the transaction that triggered it.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.store = LedgerStore(self.storage)
        self.aggregator = BalanceAggregator(self.storage, self.store, self.settings)
        self.hooks: list[PostCommitHook] = []

    def register_hook(self, hook: PostCommitHook) -> None:
        self.hooks.append(hook)

    # --- units of work ----------------------------------------------------

    def atomic(self, keys: Iterable[Hashable], work: Callable[[UnitOfWork], T]) -> T:
        """Run work in a fresh unit, retrying from scratch on a version conflict."""
        keys = list(keys)
        retries = self.settings.AGGREGATE_MAX_RETRIES
        attempt = 0
        while True:
            try:
                with self.storage.unit_of_work(keys) as uow:
                    return work(uow)
            except VersionConflictError:
                attempt += 1
                if attempt > retries:
                    raise
                logger.warning("Version conflict on %s, retrying (%d/%d)", keys, attempt, retries)

    def commit(self, uow: UnitOfWork, draft: TransactionDraft) -> Transaction:
        transaction = self.store.append(uow, draft)
        spent = -transaction.coins_delta if transaction.kind == TransactionKind.REDEMPTION else 0
        self.aggregator.apply_delta(
            uow,
            transaction.student_id,
            transaction.tenant_id,
            transaction.points_delta,
            transaction.coins_delta,
            spent_delta=spent,
        )
        for hook in self.hooks:
            hook(uow, transaction)

        def _announce():
            logger.info(
                "Committed %s transaction %s for student %s: %+d points, %+d coins (%s)",
                transaction.kind.value, transaction.id, transaction.student_id,
                transaction.points_delta, transaction.coins_delta, transaction.category.value,
            )
            self.emit(EventType.TRANSACTION_COMMITTED, transaction.tenant_id, {
                "transaction_id": str(transaction.id),
                "student_id": str(transaction.student_id),
                "kind": transaction.kind.value,
                "points_delta": transaction.points_delta,
                "coins_delta": transaction.coins_delta,
            })

        uow.after_commit(_announce)
        return transaction

    def commit_one(self, draft: TransactionDraft) -> Transaction:
        return self.atomic(
            [student_key(draft.tenant_id, draft.student_id)],
            lambda uow: self.commit(uow, draft),
        )

    def emit(self, event_type: EventType, tenant_id: UUID, payload: dict) -> None:
        self.events.publish(DomainEvent(type=event_type, tenant_id=tenant_id, payload=payload))

    # --- actors -----------------------------------------------------------

    def resolve_actor(self, actor_id: UUID, tenant_id: Optional[UUID] = None) -> Actor:
        staff = self.storage.staff.get(actor_id)
        if staff is None:
            raise PermissionDeniedError(f"Unknown actor {actor_id}")
        if tenant_id is not None and staff["tenant_id"] != tenant_id:
            raise PermissionDeniedError(f"Actor {actor_id} does not belong to tenant {tenant_id}")
        return Actor(id=staff["id"], tenant_id=staff["tenant_id"], role=staff["role"], name=staff["name"])

    def authorize(self, actor: Actor, tenant_id: UUID, elevated: bool = False) -> None:
        if actor.tenant_id != tenant_id:
            raise PermissionDeniedError(f"Actor {actor.id} cannot act in tenant {tenant_id}")
        if not actor.is_staff:
            raise PermissionDeniedError(f"Actor {actor.id} is not staff")
        if elevated and not actor.is_elevated:
            raise PermissionDeniedError(f"Actor {actor.id} lacks elevated privilege")

    # --- history maintenance ---------------------------------------------

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return self.store.get(transaction_id)

    def soft_delete(self, actor: Actor, transaction_id: UUID) -> Transaction:
        """Hide a transaction from replay; the aggregate follows the replay."""
        original = self.store.get(transaction_id)
        self.authorize(actor, original.tenant_id, elevated=True)
        if original.related_entity_type == RelatedEntity.REDEMPTION:
            raise ConflictError(
                f"Transaction {transaction_id} belongs to a redemption; cancel the redemption instead"
            )

        def work(uow: UnitOfWork) -> Transaction:
            deleted = self.store.soft_delete(uow, transaction_id, actor.id)
            aggregate = self.aggregator.rebuild(uow, deleted.tenant_id, deleted.student_id)
            if aggregate.available_coins < 0:
                raise InsufficientBalanceError(
                    f"Deleting transaction {transaction_id} would leave {aggregate.available_coins} coins"
                )
            if aggregate.total_points < 0:
                raise ValidationError(
                    f"Deleting transaction {transaction_id} would leave {aggregate.total_points} points"
                )
            uow.after_commit(lambda: logger.info(
                "Transaction %s soft-deleted by %s", transaction_id, actor.id
            ))
            return deleted

        return self.atomic([student_key(original.tenant_id, original.student_id)], work)

    def reverse_transaction(self, actor: Actor, transaction_id: UUID, reason: str) -> Transaction:
        """Append a compensating entry of opposite sign; the original stays in history."""
        original = self.store.get(transaction_id)
        self.authorize(actor, original.tenant_id, elevated=True)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reverse a transaction")

        def work(uow: UnitOfWork) -> Transaction:
            current = self.store.get(transaction_id, uow)
            if current.is_deleted:
                raise ConflictError(f"Transaction {transaction_id} is deleted")
            if current.related_entity_type == RelatedEntity.TRANSACTION:
                raise ConflictError(f"Transaction {transaction_id} is itself a reversal")
            if current.related_entity_type == RelatedEntity.REDEMPTION:
                raise ConflictError(
                    f"Transaction {transaction_id} belongs to a redemption; cancel the redemption instead"
                )
            for row in uow.rows("transactions"):
                if (
                    row["related_entity_type"] == RelatedEntity.TRANSACTION
                    and row["related_entity_id"] == transaction_id
                    and row["deleted_at"] is None
                ):
                    raise ConflictError(f"Transaction {transaction_id} has already been reversed")

            return self.commit(uow, TransactionDraft(
                student_id=current.student_id,
                tenant_id=current.tenant_id,
                kind=_reversal_kind(current),
                points_delta=-current.points_delta,
                coins_delta=-current.coins_delta,
                reason=f"Reversal: {reason.strip()}",
                category=current.category,
                awarded_by=actor.id,
                related_entity_type=RelatedEntity.TRANSACTION,
                related_entity_id=current.id,
            ))

        return self.atomic([student_key(original.tenant_id, original.student_id)], work)

    # --- balances ---------------------------------------------------------

    def get_aggregate(self, tenant_id: UUID, student_id: UUID) -> RankingAggregate:
        self.storage.require_student(tenant_id, student_id)
        return self.aggregator.get(tenant_id, student_id)

    def replay(self, tenant_id: UUID, student_id: UUID) -> ReplayResult:
        self.storage.require_student(tenant_id, student_id)
        return self.store.replay(tenant_id, student_id)

    def reconcile(self, actor: Actor, tenant_id: UUID, repair: bool = False) -> list[Divergence]:
        self.authorize(actor, tenant_id, elevated=True)
        self.storage.require_tenant(tenant_id)
        return self.aggregator.reconcile(tenant_id, repair=repair)


def _reversal_kind(original: Transaction) -> TransactionKind:
    if original.kind == TransactionKind.REDEMPTION:
        return TransactionKind.REDEMPTION
    if original.kind == TransactionKind.DEDUCTED:
        return TransactionKind.EARNED
    return TransactionKind.DEDUCTED


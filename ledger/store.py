import logging
from typing import Optional
from uuid import UUID, uuid4

from .exceptions import NotFoundError, ValidationError
from .models import (
    ReplayResult,
    Transaction,
    TransactionDraft,
    TransactionFilters,
    TransactionKind,
)
from .storage import InMemoryStorage, UnitOfWork, copy_row, utcnow

logger = logging.getLogger(__name__)


class LedgerStore:
    """Append-only history of point and coin events.

    append() is the only way a row enters the transactions table, and no
    method ever rewrites a committed row's kind or deltas. soft_delete() only
    stamps the deletion marker, which removes the row from replay.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def append(self, uow: UnitOfWork, draft: TransactionDraft) -> Transaction:
        self._validate(draft)

        transaction_id = uuid4()
        entry_data = {
            "id": transaction_id,
            "sequence": self.storage.next_sequence(),
            "student_id": draft.student_id,
            "tenant_id": draft.tenant_id,
            "kind": draft.kind,
            "points_delta": draft.points_delta,
            "coins_delta": draft.coins_delta,
            "reason": draft.reason.strip(),
            "category": draft.category,
            "awarded_by": draft.awarded_by,
            "related_entity_type": draft.related_entity_type,
            "related_entity_id": draft.related_entity_id,
            "approval_id": draft.approval_id,
            "created_at": utcnow(),
            "deleted_at": None,
            "deleted_by": None,
        }
        uow.put("transactions", transaction_id, entry_data)
        return Transaction(**entry_data)

    def get(self, transaction_id: UUID, uow: Optional[UnitOfWork] = None) -> Transaction:
        row = uow.get("transactions", transaction_id) if uow else self.storage.get("transactions", transaction_id)
        if row is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**row)

    def list_by_student(
        self,
        tenant_id: UUID,
        student_id: UUID,
        filters: Optional[TransactionFilters] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> list[Transaction]:
        """Transactions for one student in append order."""
        filters = filters or TransactionFilters()
        rows = uow.rows("transactions") if uow else self.storage.snapshot("transactions")

        entries = []
        for row in rows:
            if row["student_id"] != student_id or row["tenant_id"] != tenant_id:
                continue
            if row["deleted_at"] is not None and not filters.include_deleted:
                continue
            if filters.kind and row["kind"] != filters.kind:
                continue
            if filters.category and row["category"] != filters.category:
                continue
            if filters.since and row["created_at"] < filters.since:
                continue
            if filters.until and row["created_at"] > filters.until:
                continue
            entries.append(Transaction(**row))
        entries.sort(key=lambda e: e.sequence)
        return entries

    def soft_delete(self, uow: UnitOfWork, transaction_id: UUID, actor_id: UUID) -> Transaction:
        row = uow.get("transactions", transaction_id)
        if row is None or row["deleted_at"] is not None:
            raise NotFoundError(f"Transaction {transaction_id} not found or already deleted")

        deleted = copy_row(row, deleted_at=utcnow(), deleted_by=actor_id)
        uow.put("transactions", transaction_id, deleted)
        return Transaction(**deleted)

    def replay(self, tenant_id: UUID, student_id: UUID, uow: Optional[UnitOfWork] = None) -> ReplayResult:
        result = ReplayResult()
        for entry in self.list_by_student(tenant_id, student_id, uow=uow):
            result.total_points += entry.points_delta
            result.available_coins += entry.coins_delta
            if entry.kind == TransactionKind.REDEMPTION:
                result.spent_coins -= entry.coins_delta
            result.transaction_count += 1
        return result

    def _validate(self, draft: TransactionDraft):
        if not draft.reason or not draft.reason.strip():
            raise ValidationError("A reason is required for every transaction")

        try:
            self.storage.require_student(draft.tenant_id, draft.student_id)
        except NotFoundError as e:
            raise ValidationError(str(e)) from e

        kind = draft.kind
        points, coins = draft.points_delta, draft.coins_delta
        if kind in (TransactionKind.EARNED, TransactionKind.BONUS) and (points < 0 or coins < 0):
            raise ValidationError(f"{kind.value} transactions cannot carry negative deltas")
        if kind == TransactionKind.DEDUCTED and (points > 0 or coins > 0):
            raise ValidationError("deducted transactions cannot carry positive deltas")
        if kind == TransactionKind.REDEMPTION and points != 0:
            raise ValidationError("redemption transactions move coins only")

import logging
from typing import Optional
from uuid import UUID, uuid4

from .events import EventType
from .exceptions import (
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Actor,
    ApprovalDecision,
    ApprovalDecisionResponse,
    ApprovalPriority,
    AwardRequest,
    BulkAwardRequest,
    BulkProposalResponse,
    PendingApproval,
    ProposalResult,
    ProposalStatus,
    RelatedEntity,
    TransactionCategory,
    TransactionDraft,
    TransactionKind,
)
from .service import LedgerService
from .storage import UnitOfWork, copy_row, student_key, utcnow

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {
    ApprovalPriority.HIGH: 0,
    ApprovalPriority.MEDIUM: 1,
    ApprovalPriority.LOW: 2,
}

# Categories that only the engine itself may write.
SYSTEM_CATEGORIES = frozenset({
    TransactionCategory.ACHIEVEMENT,
    TransactionCategory.REFERRAL,
    TransactionCategory.REDEMPTION,
})


class ApprovalWorkflow:
    """Routes staff awards either straight into the ledger or into the approval queue.

    proposed -> committed            when abs(points) <= threshold
    proposed -> pending -> approved  (commits the transaction)
                        -> rejected  (no ledger effect, kept for audit)
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage
        self.settings = ledger.settings

    def requires_approval(self, points: int) -> bool:
        return abs(points) > self.settings.APPROVAL_THRESHOLD_POINTS

    def priority_for(self, points: int) -> ApprovalPriority:
        magnitude = abs(points)
        if magnitude > self.settings.APPROVAL_HIGH_PRIORITY_POINTS:
            return ApprovalPriority.HIGH
        if magnitude > self.settings.APPROVAL_MEDIUM_PRIORITY_POINTS:
            return ApprovalPriority.MEDIUM
        return ApprovalPriority.LOW

    def propose(self, actor: Actor, request: AwardRequest) -> ProposalResult:
        self.ledger.authorize(actor, actor.tenant_id)
        tenant_id = actor.tenant_id
        self.storage.require_student(tenant_id, request.student_id)
        kind = self._validate(request)

        def work(uow: UnitOfWork) -> ProposalResult:
            if self.requires_approval(request.points):
                approval = self._enqueue(uow, actor, request, kind)
                return ProposalResult(
                    student_id=request.student_id, status=ProposalStatus.PENDING, approval=approval
                )
            transaction = self.ledger.commit(uow, TransactionDraft(
                student_id=request.student_id,
                tenant_id=tenant_id,
                kind=kind,
                points_delta=request.points,
                coins_delta=request.coins,
                reason=request.reason,
                category=request.category,
                awarded_by=actor.id,
            ))
            return ProposalResult(
                student_id=request.student_id, status=ProposalStatus.COMMITTED, transaction=transaction
            )

        return self.ledger.atomic([student_key(tenant_id, request.student_id)], work)

    def propose_bulk(self, actor: Actor, request: BulkAwardRequest) -> BulkProposalResponse:
        """One independent unit of work per student; failures are reported, not raised."""
        self.ledger.authorize(actor, actor.tenant_id)
        if not request.student_ids:
            raise ValidationError("Bulk award needs at least one student")

        results = []
        for student_id in dict.fromkeys(request.student_ids):
            try:
                result = self.propose(actor, AwardRequest(
                    student_id=student_id,
                    points=request.points,
                    coins=request.coins,
                    reason=request.reason,
                    category=request.category,
                ))
            except LedgerServiceError as e:
                logger.info("Bulk award for student %s failed: %s", student_id, e)
                result = ProposalResult(student_id=student_id, status=ProposalStatus.FAILED, error=str(e))
            results.append(result)

        return BulkProposalResponse(
            results=results,
            committed=sum(1 for r in results if r.status == ProposalStatus.COMMITTED),
            pending=sum(1 for r in results if r.status == ProposalStatus.PENDING),
            failed=sum(1 for r in results if r.status == ProposalStatus.FAILED),
        )

    def approve(self, actor: Actor, approval_id: UUID) -> ApprovalDecisionResponse:
        approval = self.get(approval_id)
        self.ledger.authorize(actor, approval.tenant_id, elevated=True)

        def work(uow: UnitOfWork) -> ApprovalDecisionResponse:
            row = self._decidable_row(uow, approval_id)
            transaction = self.ledger.commit(uow, TransactionDraft(
                student_id=row["student_id"],
                tenant_id=row["tenant_id"],
                kind=row["kind"],
                points_delta=row["points_delta"],
                coins_delta=row["coins_delta"],
                reason=row["reason"],
                category=row["category"],
                awarded_by=row["requested_by"],
                related_entity_type=RelatedEntity.APPROVAL,
                related_entity_id=approval_id,
                approval_id=approval_id,
            ))
            decided = self._decide(uow, row, actor, ApprovalDecision.APPROVED, None, transaction.id)
            return ApprovalDecisionResponse(
                approval=decided, transaction=transaction, message="Approval granted and transaction committed"
            )

        return self.ledger.atomic([student_key(approval.tenant_id, approval.student_id)], work)

    def reject(self, actor: Actor, approval_id: UUID, reason: Optional[str]) -> ApprovalDecisionResponse:
        approval = self.get(approval_id)
        self.ledger.authorize(actor, approval.tenant_id, elevated=True)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject an approval")

        def work(uow: UnitOfWork) -> ApprovalDecisionResponse:
            row = self._decidable_row(uow, approval_id)
            decided = self._decide(uow, row, actor, ApprovalDecision.REJECTED, reason.strip(), None)
            return ApprovalDecisionResponse(approval=decided, message="Approval rejected")

        return self.ledger.atomic([student_key(approval.tenant_id, approval.student_id)], work)

    def get(self, approval_id: UUID) -> PendingApproval:
        row = self.storage.get("approvals", approval_id)
        if row is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        return PendingApproval(**row)

    def list_pending(
        self, tenant_id: UUID, priority: Optional[ApprovalPriority] = None
    ) -> list[PendingApproval]:
        """Undecided approvals, most urgent first, then oldest first."""
        approvals = [
            PendingApproval(**row) for row in self.storage.snapshot("approvals")
            if row["tenant_id"] == tenant_id and row["decision"] == ApprovalDecision.PENDING
        ]
        if priority:
            approvals = [a for a in approvals if a.priority == priority]
        approvals.sort(key=lambda a: (PRIORITY_ORDER[a.priority], a.created_at))
        return approvals

    def _validate(self, request: AwardRequest) -> TransactionKind:
        if not request.reason or not request.reason.strip():
            raise ValidationError("A reason is required for every award")
        if request.category in SYSTEM_CATEGORIES:
            raise ValidationError(f"Category {request.category.value} cannot be awarded manually")
        if request.points < 0 or request.coins < 0:
            if request.points > 0 or request.coins > 0:
                raise ValidationError("An award cannot mix positive and negative deltas")
            return TransactionKind.DEDUCTED
        return TransactionKind.EARNED

    def _enqueue(
        self, uow: UnitOfWork, actor: Actor, request: AwardRequest, kind: TransactionKind
    ) -> PendingApproval:
        approval_id = uuid4()
        approval_data = {
            "id": approval_id,
            "tenant_id": actor.tenant_id,
            "student_id": request.student_id,
            "kind": kind,
            "points_delta": request.points,
            "coins_delta": request.coins,
            "reason": request.reason.strip(),
            "category": request.category,
            "requested_by": actor.id,
            "priority": self.priority_for(request.points),
            "decision": ApprovalDecision.PENDING,
            "decided_by": None,
            "decision_reason": None,
            "transaction_id": None,
            "created_at": utcnow(),
            "decided_at": None,
            "version": 1,
        }
        uow.put("approvals", approval_id, approval_data)
        uow.after_commit(lambda: logger.info(
            "Award of %+d points for student %s queued for approval %s",
            request.points, request.student_id, approval_id,
        ))
        return PendingApproval(**approval_data)

    def _decidable_row(self, uow: UnitOfWork, approval_id: UUID) -> dict:
        row = uow.get("approvals", approval_id)
        if row is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        if row["decision"] != ApprovalDecision.PENDING:
            raise InvalidStateTransitionError(
                f"Approval {approval_id} was already {row['decision'].value}"
            )
        return row

    def _decide(
        self,
        uow: UnitOfWork,
        row: dict,
        actor: Actor,
        decision: ApprovalDecision,
        reason: Optional[str],
        transaction_id: Optional[UUID],
    ) -> PendingApproval:
        decided = copy_row(
            row,
            decision=decision,
            decided_by=actor.id,
            decision_reason=reason,
            transaction_id=transaction_id,
            decided_at=utcnow(),
            version=row["version"] + 1,
        )
        uow.put("approvals", row["id"], decided, expected_version=row["version"])

        def _announce():
            logger.info("Approval %s %s by %s", row["id"], decision.value, actor.id)
            self.ledger.emit(EventType.APPROVAL_DECIDED, row["tenant_id"], {
                "approval_id": str(row["id"]),
                "student_id": str(row["student_id"]),
                "decision": decision.value,
                "transaction_id": str(transaction_id) if transaction_id else None,
            })

        uow.after_commit(_announce)
        return PendingApproval(**decided)

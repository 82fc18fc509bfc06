import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .engine import build_engine
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import (
    Achievement,
    Actor,
    ApprovalDecisionResponse,
    ApprovalPriority,
    AwardRequest,
    BulkAwardRequest,
    BulkProposalResponse,
    Campaign,
    CreateAchievementRequest,
    CreateCampaignRequest,
    CreateRewardRequest,
    DecisionRequest,
    Divergence,
    Leaderboard,
    PendingApproval,
    ProposalResult,
    RankingAggregate,
    RedeemRequest,
    Redemption,
    RedemptionNote,
    ReferralRecord,
    ReferralStatus,
    ReferralTransitionResponse,
    ReverseTransactionRequest,
    Reward,
    StudentAchievement,
    StudentStats,
    SubmitReferralRequest,
    TenantStats,
    Transaction,
    TransactionCategory,
    TransactionFilters,
    TransactionHistoryResponse,
    TransactionKind,
    UpdateAchievementRequest,
)

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Points Ledger API",
    description="Points and coins ledger with approvals, achievements, rewards and referral payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = build_engine(settings=settings)

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def current_actor(x_actor_id: UUID = Header(...), x_tenant_id: Optional[UUID] = Header(None)) -> Actor:
    return engine.ledger.resolve_actor(x_actor_id, x_tenant_id)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "points-ledger"}


# --- awards & approvals -----------------------------------------------------

@app.post("/awards", response_model=ProposalResult, status_code=status.HTTP_201_CREATED, tags=["Awards"])
def propose_award(request: AwardRequest, actor: Actor = Depends(current_actor)) -> ProposalResult:
    return engine.approvals.propose(actor, request)


@app.post("/awards/bulk", response_model=BulkProposalResponse, tags=["Awards"])
def propose_bulk_award(request: BulkAwardRequest, actor: Actor = Depends(current_actor)) -> BulkProposalResponse:
    return engine.approvals.propose_bulk(actor, request)


@app.get("/approvals", response_model=list[PendingApproval], tags=["Approvals"])
def list_approvals(
    priority: Optional[ApprovalPriority] = None, actor: Actor = Depends(current_actor)
) -> list[PendingApproval]:
    return engine.queries.pending_queue(actor.tenant_id, priority)


@app.post("/approvals/{approval_id}/approve", response_model=ApprovalDecisionResponse, tags=["Approvals"])
def approve(approval_id: UUID, actor: Actor = Depends(current_actor)) -> ApprovalDecisionResponse:
    return engine.approvals.approve(actor, approval_id)


@app.post("/approvals/{approval_id}/reject", response_model=ApprovalDecisionResponse, tags=["Approvals"])
def reject(
    approval_id: UUID, request: DecisionRequest, actor: Actor = Depends(current_actor)
) -> ApprovalDecisionResponse:
    return engine.approvals.reject(actor, approval_id, request.reason)


# --- transactions -----------------------------------------------------------

@app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(transaction_id: UUID, actor: Actor = Depends(current_actor)) -> Transaction:
    transaction = engine.ledger.get_transaction(transaction_id)
    if transaction.tenant_id != actor.tenant_id:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return transaction


@app.delete("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def delete_transaction(transaction_id: UUID, actor: Actor = Depends(current_actor)) -> Transaction:
    return engine.ledger.soft_delete(actor, transaction_id)


@app.post("/transactions/{transaction_id}/reverse", response_model=Transaction, tags=["Transactions"])
def reverse_transaction(
    transaction_id: UUID, request: ReverseTransactionRequest, actor: Actor = Depends(current_actor)
) -> Transaction:
    return engine.ledger.reverse_transaction(actor, transaction_id, request.reason)


# --- students & tenants -----------------------------------------------------

@app.get("/students/{student_id}/history", response_model=TransactionHistoryResponse, tags=["Students"])
def student_history(
    student_id: UUID,
    page: int = 1,
    page_size: Optional[int] = None,
    kind: Optional[TransactionKind] = None,
    category: Optional[TransactionCategory] = None,
    include_deleted: bool = False,
    actor: Actor = Depends(current_actor),
) -> TransactionHistoryResponse:
    filters = TransactionFilters(kind=kind, category=category, include_deleted=include_deleted)
    return engine.queries.history(actor.tenant_id, student_id, page, page_size, filters)


@app.get("/students/{student_id}/ranking", response_model=RankingAggregate, tags=["Students"])
def student_ranking(student_id: UUID, actor: Actor = Depends(current_actor)) -> RankingAggregate:
    return engine.ledger.get_aggregate(actor.tenant_id, student_id)


@app.get("/students/{student_id}/stats", response_model=StudentStats, tags=["Students"])
def student_stats(student_id: UUID, actor: Actor = Depends(current_actor)) -> StudentStats:
    return engine.queries.student_stats(actor.tenant_id, student_id)


@app.get("/students/{student_id}/achievements", response_model=list[StudentAchievement], tags=["Students"])
def student_achievements(student_id: UUID, actor: Actor = Depends(current_actor)) -> list[StudentAchievement]:
    engine.ledger.storage.require_student(actor.tenant_id, student_id)
    return engine.achievements.list_for_student(actor.tenant_id, student_id)


@app.get("/students/{student_id}/redemptions", response_model=list[Redemption], tags=["Students"])
def student_redemptions(student_id: UUID, actor: Actor = Depends(current_actor)) -> list[Redemption]:
    engine.ledger.storage.require_student(actor.tenant_id, student_id)
    return engine.redemptions.list_for_student(actor.tenant_id, student_id)


@app.get("/tenants/{tenant_id}/leaderboard", response_model=Leaderboard, tags=["Tenants"])
def leaderboard(
    tenant_id: UUID, limit: Optional[int] = None, offset: int = 0, actor: Actor = Depends(current_actor)
) -> Leaderboard:
    engine.ledger.authorize(actor, tenant_id)
    return engine.queries.leaderboard(tenant_id, limit, offset)


@app.get("/tenants/{tenant_id}/stats", response_model=TenantStats, tags=["Tenants"])
def tenant_stats(tenant_id: UUID, actor: Actor = Depends(current_actor)) -> TenantStats:
    engine.ledger.authorize(actor, tenant_id)
    return engine.queries.tenant_stats(tenant_id)


@app.post("/tenants/{tenant_id}/reconcile", response_model=list[Divergence], tags=["Tenants"])
def reconcile(tenant_id: UUID, repair: bool = False, actor: Actor = Depends(current_actor)) -> list[Divergence]:
    return engine.ledger.reconcile(actor, tenant_id, repair)


# --- achievements -----------------------------------------------------------

@app.post("/achievements", response_model=Achievement, status_code=status.HTTP_201_CREATED, tags=["Achievements"])
def create_achievement(request: CreateAchievementRequest, actor: Actor = Depends(current_actor)) -> Achievement:
    return engine.achievements.create(actor, request)


@app.get("/achievements", response_model=list[Achievement], tags=["Achievements"])
def list_achievements(active_only: bool = False, actor: Actor = Depends(current_actor)) -> list[Achievement]:
    return engine.achievements.catalog(actor.tenant_id, active_only)


@app.patch("/achievements/{achievement_id}", response_model=Achievement, tags=["Achievements"])
def update_achievement(
    achievement_id: UUID, request: UpdateAchievementRequest, actor: Actor = Depends(current_actor)
) -> Achievement:
    return engine.achievements.update(actor, achievement_id, request)


@app.post(
    "/achievements/{achievement_id}/award/{student_id}",
    response_model=StudentAchievement,
    status_code=status.HTTP_201_CREATED,
    tags=["Achievements"],
)
def award_achievement(
    achievement_id: UUID,
    student_id: UUID,
    request: RedemptionNote,
    actor: Actor = Depends(current_actor),
) -> StudentAchievement:
    return engine.achievements.award_manually(actor, student_id, achievement_id, request.notes)


# --- rewards & redemptions --------------------------------------------------

@app.post("/rewards", response_model=Reward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def create_reward(request: CreateRewardRequest, actor: Actor = Depends(current_actor)) -> Reward:
    return engine.redemptions.create_reward(actor, request)


@app.get("/rewards", response_model=list[Reward], tags=["Rewards"])
def list_rewards(available_only: bool = False, actor: Actor = Depends(current_actor)) -> list[Reward]:
    return engine.redemptions.list_rewards(actor.tenant_id, available_only)


@app.post("/redemptions", response_model=Redemption, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def redeem(request: RedeemRequest, actor: Actor = Depends(current_actor)) -> Redemption:
    return engine.redemptions.redeem(actor, request)


@app.post("/redemptions/{redemption_id}/{action}", response_model=Redemption, tags=["Rewards"])
def update_redemption(
    redemption_id: UUID, action: str, request: RedemptionNote, actor: Actor = Depends(current_actor)
) -> Redemption:
    handlers = {
        "approve": engine.redemptions.approve,
        "reject": engine.redemptions.reject,
        "deliver": engine.redemptions.deliver,
        "cancel": engine.redemptions.cancel,
    }
    handler = handlers.get(action)
    if handler is None:
        raise NotFoundError(f"Unknown redemption action {action!r}")
    return handler(actor, redemption_id, request.notes)


# --- referrals & campaigns --------------------------------------------------

@app.post("/campaigns", response_model=Campaign, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def create_campaign(request: CreateCampaignRequest, actor: Actor = Depends(current_actor)) -> Campaign:
    return engine.referrals.create_campaign(actor, request)


@app.get("/campaigns", response_model=list[Campaign], tags=["Referrals"])
def list_campaigns(actor: Actor = Depends(current_actor)) -> list[Campaign]:
    return engine.referrals.list_campaigns(actor.tenant_id)


@app.post("/referrals", response_model=ReferralRecord, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def submit_referral(request: SubmitReferralRequest, actor: Actor = Depends(current_actor)) -> ReferralRecord:
    return engine.referrals.submit(actor, request)


@app.get("/referrals", response_model=list[ReferralRecord], tags=["Referrals"])
def list_referrals(
    status_filter: Optional[ReferralStatus] = Query(None, alias="status"),
    referrer_student_id: Optional[UUID] = None,
    actor: Actor = Depends(current_actor),
) -> list[ReferralRecord]:
    return engine.referrals.list_referrals(actor.tenant_id, status_filter, referrer_student_id)


@app.post("/referrals/{referral_id}/contact", response_model=ReferralTransitionResponse, tags=["Referrals"])
def contact_referral(referral_id: UUID, actor: Actor = Depends(current_actor)) -> ReferralTransitionResponse:
    return engine.referrals.contact(actor, referral_id)


@app.post("/referrals/{referral_id}/enroll", response_model=ReferralTransitionResponse, tags=["Referrals"])
def enroll_referral(referral_id: UUID, actor: Actor = Depends(current_actor)) -> ReferralTransitionResponse:
    return engine.referrals.enroll(actor, referral_id)


@app.post("/referrals/{referral_id}/decline", response_model=ReferralTransitionResponse, tags=["Referrals"])
def decline_referral(
    referral_id: UUID, request: DecisionRequest, actor: Actor = Depends(current_actor)
) -> ReferralTransitionResponse:
    return engine.referrals.decline(actor, referral_id, request.reason)


@app.post("/referrals/expire", response_model=list[ReferralRecord], tags=["Referrals"])
def expire_referrals(actor: Actor = Depends(current_actor)) -> list[ReferralRecord]:
    return engine.referrals.expire_stale(actor, actor.tenant_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

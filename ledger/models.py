from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Read a timezone-less datetime as UTC so it compares with stored timestamps."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


class TransactionKind(str, Enum):
    EARNED = "earned"
    DEDUCTED = "deducted"
    BONUS = "bonus"
    REDEMPTION = "redemption"


class TransactionCategory(str, Enum):
    HOMEWORK = "homework"
    ATTENDANCE = "attendance"
    BEHAVIOR = "behavior"
    ACHIEVEMENT = "achievement"
    REFERRAL = "referral"
    MANUAL = "manual"
    REDEMPTION = "redemption"


class RelatedEntity(str, Enum):
    ACHIEVEMENT = "achievement"
    REDEMPTION = "redemption"
    REFERRAL = "referral"
    TRANSACTION = "transaction"
    APPROVAL = "approval"


class ActorRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProposalStatus(str, Enum):
    COMMITTED = "committed"
    PENDING = "pending"
    FAILED = "failed"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    ENROLLED = "enrolled"
    DECLINED = "declined"
    EXPIRED = "expired"


REFERRAL_TERMINAL_STATES = frozenset(
    {ReferralStatus.ENROLLED, ReferralStatus.DECLINED, ReferralStatus.EXPIRED}
)


class Actor(BaseModel):
    id: UUID
    tenant_id: UUID
    role: ActorRole
    name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_staff(self) -> bool:
        return self.role != ActorRole.STUDENT

    @property
    def is_elevated(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SUPERADMIN)


# --- ledger ---------------------------------------------------------------


class TransactionDraft(BaseModel):
    """A proposed ledger entry, before it has an identity."""

    student_id: UUID
    tenant_id: UUID
    kind: TransactionKind = TransactionKind.EARNED
    points_delta: int = 0
    coins_delta: int = 0
    reason: str = ""
    category: TransactionCategory = TransactionCategory.MANUAL
    awarded_by: UUID
    related_entity_type: Optional[RelatedEntity] = None
    related_entity_id: Optional[UUID] = None
    approval_id: Optional[UUID] = None


class Transaction(BaseModel):
    id: UUID
    sequence: int
    student_id: UUID
    tenant_id: UUID
    kind: TransactionKind
    points_delta: int
    coins_delta: int
    reason: str
    category: TransactionCategory
    awarded_by: UUID
    related_entity_type: Optional[RelatedEntity] = None
    related_entity_id: Optional[UUID] = None
    approval_id: Optional[UUID] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class TransactionFilters(BaseModel):
    kind: Optional[TransactionKind] = None
    category: Optional[TransactionCategory] = None
    include_deleted: bool = False
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @field_validator("since", "until")
    @classmethod
    def normalize_window(cls, value):
        return as_utc(value)


class RankingAggregate(BaseModel):
    student_id: UUID
    tenant_id: UUID
    total_points: int = 0
    available_coins: int = 0
    spent_coins: int = 0
    current_level: int = 1
    version: int = 0
    last_activity_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReplayResult(BaseModel):
    total_points: int = 0
    available_coins: int = 0
    spent_coins: int = 0
    transaction_count: int = 0


class Divergence(BaseModel):
    student_id: UUID
    cached: ReplayResult
    replayed: ReplayResult
    repaired: bool = False


# --- approvals ------------------------------------------------------------


class AwardRequest(BaseModel):
    student_id: UUID
    points: int = 0
    coins: int = 0
    reason: str = Field(..., description="Why the points are being awarded or deducted")
    category: TransactionCategory = TransactionCategory.MANUAL

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "student_id": "7b0e7a4c-2d65-4d1c-9a51-3f1c0b1a0001",
            "points": 10,
            "coins": 2,
            "reason": "Homework completed on time",
            "category": "homework"
        }
    })


class BulkAwardRequest(BaseModel):
    student_ids: list[UUID]
    points: int = 0
    coins: int = 0
    reason: str
    category: TransactionCategory = TransactionCategory.MANUAL


class PendingApproval(BaseModel):
    id: UUID
    tenant_id: UUID
    student_id: UUID
    kind: TransactionKind
    points_delta: int
    coins_delta: int
    reason: str
    category: TransactionCategory
    requested_by: UUID
    priority: ApprovalPriority
    decision: ApprovalDecision = ApprovalDecision.PENDING
    decided_by: Optional[UUID] = None
    decision_reason: Optional[str] = None
    transaction_id: Optional[UUID] = None
    created_at: datetime
    decided_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_decide(self) -> bool:
        return self.decision == ApprovalDecision.PENDING


class ProposalResult(BaseModel):
    student_id: UUID
    status: ProposalStatus
    transaction: Optional[Transaction] = None
    approval: Optional[PendingApproval] = None
    error: Optional[str] = None


class BulkProposalResponse(BaseModel):
    results: list[ProposalResult]
    committed: int
    pending: int
    failed: int


class DecisionRequest(BaseModel):
    reason: Optional[str] = None


class ApprovalDecisionResponse(BaseModel):
    approval: PendingApproval
    transaction: Optional[Transaction] = None
    message: str


class ReverseTransactionRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")


# --- achievements ---------------------------------------------------------


class Achievement(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: Optional[str] = None
    points_reward: int = 0
    coins_reward: int = 0
    criteria: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    is_automatic: bool = True
    created_by: UUID
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreateAchievementRequest(BaseModel):
    name: str
    description: Optional[str] = None
    points_reward: int = Field(default=0, ge=0)
    coins_reward: int = Field(default=0, ge=0)
    criteria: dict[str, Any] = Field(default_factory=dict)
    is_automatic: bool = True

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Homework Hero",
            "points_reward": 20,
            "coins_reward": 5,
            "criteria": {"field": "category_counts.homework", "operator": "greater_than_or_equal", "value": 10}
        }
    })


class UpdateAchievementRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    points_reward: Optional[int] = Field(default=None, ge=0)
    coins_reward: Optional[int] = Field(default=None, ge=0)
    criteria: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None
    is_automatic: Optional[bool] = None


class StudentAchievement(BaseModel):
    id: UUID
    tenant_id: UUID
    student_id: UUID
    achievement_id: UUID
    points_awarded: int
    coins_awarded: int
    transaction_id: Optional[UUID] = None
    awarded_by: UUID
    notes: Optional[str] = None
    earned_at: datetime

    model_config = ConfigDict(from_attributes=True)


# --- rewards --------------------------------------------------------------


class Reward(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: Optional[str] = None
    coin_cost: int
    reward_type: str = "privilege"
    reward_category: str = "general"
    inventory_quantity: Optional[int] = None
    max_redemptions_per_student: Optional[int] = None
    requires_approval: bool = True
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_by: UUID
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def normalize_window(cls, value):
        return as_utc(value)

    def is_available_at(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from and moment < self.valid_from:
            return False
        if self.valid_until and moment > self.valid_until:
            return False
        return True


class CreateRewardRequest(BaseModel):
    name: str
    description: Optional[str] = None
    coin_cost: int
    reward_type: str = "privilege"
    reward_category: str = "general"
    inventory_quantity: Optional[int] = None
    max_redemptions_per_student: Optional[int] = None
    requires_approval: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def normalize_window(cls, value):
        return as_utc(value)


class RedeemRequest(BaseModel):
    student_id: UUID
    reward_id: UUID
    notes: Optional[str] = None


class Redemption(BaseModel):
    id: UUID
    tenant_id: UUID
    student_id: UUID
    reward_id: UUID
    coins_spent: int
    status: RedemptionStatus
    request_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    transaction_id: UUID
    refund_transaction_id: Optional[UUID] = None
    requested_by: UUID
    redeemed_at: datetime
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    delivered_by: Optional[UUID] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_open(self) -> bool:
        return self.status in (RedemptionStatus.PENDING, RedemptionStatus.APPROVED)


class RedemptionNote(BaseModel):
    notes: Optional[str] = None


# --- referrals ------------------------------------------------------------


class CampaignTier(BaseModel):
    name: Optional[str] = None
    min_referrals: int = Field(..., ge=1)
    bonus_points: int = Field(default=0, ge=0)
    bonus_coins: int = Field(default=0, ge=0)


class Campaign(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    base_points: int
    base_coins: int = 0
    multiplier: Decimal = Decimal("1.0")
    tiers: list[CampaignTier] = Field(default_factory=list)
    starts_at: datetime
    ends_at: Optional[datetime] = None
    created_by: UUID
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_window(cls, value):
        return as_utc(value)

    def is_active_at(self, moment: datetime) -> bool:
        if moment < self.starts_at:
            return False
        return self.ends_at is None or moment <= self.ends_at


class CreateCampaignRequest(BaseModel):
    name: str
    base_points: int = Field(..., ge=0)
    base_coins: int = Field(default=0, ge=0)
    multiplier: Decimal = Field(default=Decimal("1.0"), gt=0)
    tiers: list[CampaignTier] = Field(default_factory=list)
    starts_at: datetime
    ends_at: Optional[datetime] = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_window(cls, value):
        return as_utc(value)


class SubmitReferralRequest(BaseModel):
    referrer_student_id: UUID
    prospect_name: str
    prospect_phone: str
    prospect_email: Optional[str] = None
    campaign_id: Optional[UUID] = None
    notes: Optional[str] = None


class ReferralRecord(BaseModel):
    id: UUID
    tenant_id: UUID
    referrer_student_id: UUID
    prospect_name: str
    prospect_phone: str
    prospect_email: Optional[str] = None
    status: ReferralStatus = ReferralStatus.PENDING
    campaign_id: Optional[UUID] = None
    reward_tier: Optional[str] = None
    points_awarded: int = 0
    coins_awarded: int = 0
    transaction_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_by: UUID
    created_at: datetime
    contacted_at: Optional[datetime] = None
    enrolled_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in REFERRAL_TERMINAL_STATES


class ReferralReward(BaseModel):
    base_points: int
    base_coins: int
    multiplier: Decimal
    tier_name: Optional[str] = None
    tier_bonus_points: int = 0
    tier_bonus_coins: int = 0
    enrolled_count: int
    total_points: int
    total_coins: int


class ReferralTransitionResponse(BaseModel):
    referral: ReferralRecord
    transaction: Optional[Transaction] = None
    reward: Optional[ReferralReward] = None
    message: str


class ReferralSummary(BaseModel):
    student_id: UUID
    total: int = 0
    pending: int = 0
    contacted: int = 0
    enrolled: int = 0
    declined: int = 0
    expired: int = 0
    points_earned: int = 0
    coins_earned: int = 0


# --- read model -----------------------------------------------------------


class LeaderboardEntry(BaseModel):
    rank: int
    student_id: UUID
    student_name: Optional[str] = None
    total_points: int
    available_coins: int
    current_level: int


class Leaderboard(BaseModel):
    tenant_id: UUID
    entries: list[LeaderboardEntry]
    total_count: int


class TransactionHistoryResponse(BaseModel):
    student_id: UUID
    entries: list[Transaction]
    total_count: int
    page: int
    page_size: int


class StudentStats(BaseModel):
    student_id: UUID
    tenant_id: UUID
    total_points: int
    available_coins: int
    spent_coins: int
    current_level: int
    rank: Optional[int] = None
    points_to_next_level: int
    transaction_count: int
    achievements: list[StudentAchievement]
    referrals: ReferralSummary


class TenantStats(BaseModel):
    tenant_id: UUID
    student_count: int
    transaction_count: int
    points_awarded: int
    points_deducted: int
    coins_awarded: int
    coins_spent: int
    points_by_category: dict[str, int]
    pending_approvals: int
    referral_conversion_rate: float

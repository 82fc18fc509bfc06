import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID, uuid4

from .events import EventType
from .exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Actor,
    Campaign,
    CreateCampaignRequest,
    ReferralRecord,
    ReferralReward,
    ReferralStatus,
    ReferralSummary,
    ReferralTransitionResponse,
    RelatedEntity,
    SubmitReferralRequest,
    TransactionCategory,
    TransactionDraft,
    TransactionKind,
    as_utc,
)
from .service import LedgerService
from .storage import UnitOfWork, copy_row, student_key, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ReferralStatus.CONTACTED: {ReferralStatus.PENDING},
    ReferralStatus.ENROLLED: {ReferralStatus.CONTACTED},
    ReferralStatus.DECLINED: {ReferralStatus.CONTACTED},
    ReferralStatus.EXPIRED: {ReferralStatus.PENDING, ReferralStatus.CONTACTED},
}

TIMESTAMP_FIELDS = {
    ReferralStatus.CONTACTED: "contacted_at",
    ReferralStatus.ENROLLED: "enrolled_at",
    ReferralStatus.DECLINED: "declined_at",
    ReferralStatus.EXPIRED: "expired_at",
}


def _normalize_phone(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit() or ch == "+")


def compute_reward(
    base_points: int,
    base_coins: int,
    campaign: Optional[Campaign],
    enrolled_count: int,
) -> ReferralReward:
    """base x campaign multiplier + the bonus of the highest tier the count reaches."""
    multiplier = Decimal("1")
    tier = None
    if campaign is not None:
        base_points, base_coins = campaign.base_points, campaign.base_coins
        multiplier = campaign.multiplier
        for candidate in campaign.tiers:
            if enrolled_count >= candidate.min_referrals:
                tier = candidate

    points = int((Decimal(base_points) * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    coins = int((Decimal(base_coins) * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    tier_points = tier.bonus_points if tier else 0
    tier_coins = tier.bonus_coins if tier else 0

    return ReferralReward(
        base_points=base_points,
        base_coins=base_coins,
        multiplier=multiplier,
        tier_name=(tier.name or f"{tier.min_referrals}+") if tier else None,
        tier_bonus_points=tier_points,
        tier_bonus_coins=tier_coins,
        enrolled_count=enrolled_count,
        total_points=points + tier_points,
        total_coins=coins + tier_coins,
    )


class ReferralFunnel:
    """Moves referral prospects through their lifecycle and pays the referrer on enrollment.

    pending --contact--> contacted --enroll--> enrolled
                                   --decline-> declined
    pending/contacted --expire_stale--> expired

    Every transition is checked and written under the referrer's lock, so a
    record reaches a terminal state once and enrollment pays out once.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage
        self.settings = ledger.settings

    # --- campaigns --------------------------------------------------------

    def create_campaign(self, actor: Actor, request: CreateCampaignRequest) -> Campaign:
        self.ledger.authorize(actor, actor.tenant_id, elevated=True)
        if not request.name.strip():
            raise ValidationError("Campaign name is required")
        if request.ends_at and request.ends_at <= request.starts_at:
            raise ValidationError("Campaign must end after it starts")
        thresholds = [tier.min_referrals for tier in request.tiers]
        if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
            raise ValidationError("Campaign tiers must have strictly ascending thresholds")

        campaign_id = uuid4()
        campaign_data = {
            "id": campaign_id,
            "tenant_id": actor.tenant_id,
            "created_by": actor.id,
            "created_at": utcnow(),
            **request.model_dump(),
        }
        campaign_data["name"] = request.name.strip()
        with self.storage.unit_of_work([("campaign", campaign_id)]) as uow:
            uow.put("campaigns", campaign_id, campaign_data)
        logger.info("Campaign %s (%s) created by %s", campaign_id, request.name, actor.id)
        return Campaign(**campaign_data)

    def get_campaign(self, campaign_id: UUID) -> Campaign:
        row = self.storage.get("campaigns", campaign_id)
        if row is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return Campaign(**row)

    def list_campaigns(self, tenant_id: UUID) -> list[Campaign]:
        campaigns = [Campaign(**row) for row in self.storage.snapshot("campaigns") if row["tenant_id"] == tenant_id]
        campaigns.sort(key=lambda c: c.starts_at)
        return campaigns

    def active_campaign(self, tenant_id: UUID, at: datetime) -> Optional[Campaign]:
        """The most recently started campaign whose window contains `at`."""
        active = [c for c in self.list_campaigns(tenant_id) if c.is_active_at(at)]
        return active[-1] if active else None

    def resolve_campaign(self, record: ReferralRecord, at: datetime) -> Optional[Campaign]:
        if record.campaign_id is None:
            return self.active_campaign(record.tenant_id, at)
        campaign = self.get_campaign(record.campaign_id)
        return campaign if campaign.is_active_at(at) else None

    # --- records ----------------------------------------------------------

    def submit(self, actor: Actor, request: SubmitReferralRequest) -> ReferralRecord:
        self.ledger.authorize(actor, actor.tenant_id)
        tenant_id = actor.tenant_id
        self.storage.require_student(tenant_id, request.referrer_student_id)
        if not request.prospect_name.strip():
            raise ValidationError("Prospect name is required")
        phone = _normalize_phone(request.prospect_phone)
        if not phone:
            raise ValidationError("Prospect phone is required")

        now = utcnow()
        campaign_id = request.campaign_id
        if campaign_id is not None:
            campaign = self.get_campaign(campaign_id)
            if campaign.tenant_id != tenant_id:
                raise NotFoundError(f"Campaign {campaign_id} not found")
        else:
            campaign = self.active_campaign(tenant_id, now)
            campaign_id = campaign.id if campaign else None

        def work(uow: UnitOfWork) -> ReferralRecord:
            for row in uow.rows("referrals"):
                if (
                    row["tenant_id"] == tenant_id
                    and _normalize_phone(row["prospect_phone"]) == phone
                    and row["status"] in (ReferralStatus.PENDING, ReferralStatus.CONTACTED)
                ):
                    raise ConflictError(f"Prospect {phone} already has an open referral")

            referral_id = uuid4()
            referral_data = {
                "id": referral_id,
                "tenant_id": tenant_id,
                "referrer_student_id": request.referrer_student_id,
                "prospect_name": request.prospect_name.strip(),
                "prospect_phone": request.prospect_phone,
                "prospect_email": request.prospect_email,
                "status": ReferralStatus.PENDING,
                "campaign_id": campaign_id,
                "reward_tier": None,
                "points_awarded": 0,
                "coins_awarded": 0,
                "transaction_id": None,
                "notes": request.notes,
                "created_by": actor.id,
                "created_at": now,
                "contacted_at": None,
                "enrolled_at": None,
                "declined_at": None,
                "expired_at": None,
                "version": 1,
            }
            uow.put("referrals", referral_id, referral_data)
            return ReferralRecord(**referral_data)

        return self.ledger.atomic(
            [student_key(tenant_id, request.referrer_student_id), ("prospect", tenant_id, phone)], work
        )

    def contact(self, actor: Actor, referral_id: UUID) -> ReferralTransitionResponse:
        record = self.get(referral_id)
        self.ledger.authorize(actor, record.tenant_id)
        return self._run(record, lambda uow, row: self._move(uow, row, ReferralStatus.CONTACTED, utcnow()))

    def decline(self, actor: Actor, referral_id: UUID, reason: Optional[str] = None) -> ReferralTransitionResponse:
        record = self.get(referral_id)
        self.ledger.authorize(actor, record.tenant_id, elevated=True)
        return self._run(
            record, lambda uow, row: self._move(uow, row, ReferralStatus.DECLINED, utcnow(), notes=reason)
        )

    def enroll(
        self, actor: Actor, referral_id: UUID, at: Optional[datetime] = None
    ) -> ReferralTransitionResponse:
        record = self.get(referral_id)
        self.ledger.authorize(actor, record.tenant_id, elevated=True)
        at = at or utcnow()
        campaign = self.resolve_campaign(record, at)

        def work(uow: UnitOfWork, row: dict) -> ReferralTransitionResponse:
            prior = sum(
                1 for other in uow.rows("referrals")
                if other["tenant_id"] == row["tenant_id"]
                and other["referrer_student_id"] == row["referrer_student_id"]
                and other["status"] == ReferralStatus.ENROLLED
                and other["id"] != row["id"]
            )
            reward = compute_reward(
                self.settings.REFERRAL_BASE_POINTS,
                self.settings.REFERRAL_BASE_COINS,
                campaign,
                prior + 1,
            )
            self._move(uow, row, ReferralStatus.ENROLLED, at)

            transaction = None
            if reward.total_points or reward.total_coins:
                transaction = self.ledger.commit(uow, TransactionDraft(
                    student_id=row["referrer_student_id"],
                    tenant_id=row["tenant_id"],
                    kind=TransactionKind.BONUS,
                    points_delta=reward.total_points,
                    coins_delta=reward.total_coins,
                    reason=f"Referral enrolled: {row['prospect_name']}",
                    category=TransactionCategory.REFERRAL,
                    awarded_by=actor.id,
                    related_entity_type=RelatedEntity.REFERRAL,
                    related_entity_id=row["id"],
                ))

            paid = copy_row(
                uow.get("referrals", row["id"]),
                campaign_id=campaign.id if campaign else row["campaign_id"],
                reward_tier=reward.tier_name,
                points_awarded=reward.total_points,
                coins_awarded=reward.total_coins,
                transaction_id=transaction.id if transaction else None,
            )
            uow.put("referrals", row["id"], paid)

            def _announce():
                logger.info(
                    "Referral %s enrolled; referrer %s earns %d points, %d coins (tier %s)",
                    row["id"], row["referrer_student_id"], reward.total_points, reward.total_coins,
                    reward.tier_name,
                )
                self.ledger.emit(EventType.REFERRAL_ENROLLED, row["tenant_id"], {
                    "referral_id": str(row["id"]),
                    "referrer_student_id": str(row["referrer_student_id"]),
                    "points": reward.total_points,
                    "coins": reward.total_coins,
                })

            uow.after_commit(_announce)
            return ReferralTransitionResponse(
                referral=ReferralRecord(**paid),
                transaction=transaction,
                reward=reward,
                message="Referral enrolled and reward credited" if transaction else "Referral enrolled",
            )

        return self._run(record, work)

    def expire_stale(self, actor: Actor, tenant_id: UUID, now: Optional[datetime] = None) -> list[ReferralRecord]:
        """Expire open referrals older than the retention window, one unit of work each."""
        self.ledger.authorize(actor, tenant_id, elevated=True)
        now = as_utc(now) if now else utcnow()
        cutoff = now - timedelta(days=self.settings.REFERRAL_RETENTION_DAYS)

        expired = []
        for record in self.list_referrals(tenant_id):
            if record.is_terminal or record.created_at >= cutoff:
                continue
            try:
                response = self._run(
                    record, lambda uow, row: self._move(uow, row, ReferralStatus.EXPIRED, now)
                )
            except ConflictError as e:
                # Another writer reached a terminal state first.
                logger.info("Skipping expiry of referral %s: %s", record.id, e)
                continue
            expired.append(response.referral)
        if expired:
            logger.info("Expired %d referrals in tenant %s", len(expired), tenant_id)
        return expired

    def get(self, referral_id: UUID) -> ReferralRecord:
        row = self.storage.get("referrals", referral_id)
        if row is None:
            raise NotFoundError(f"Referral {referral_id} not found")
        return ReferralRecord(**row)

    def list_referrals(
        self,
        tenant_id: UUID,
        status: Optional[ReferralStatus] = None,
        referrer_student_id: Optional[UUID] = None,
    ) -> list[ReferralRecord]:
        records = [
            ReferralRecord(**row) for row in self.storage.snapshot("referrals")
            if row["tenant_id"] == tenant_id
            and (status is None or row["status"] == status)
            and (referrer_student_id is None or row["referrer_student_id"] == referrer_student_id)
        ]
        records.sort(key=lambda r: r.created_at)
        return records

    def summary(self, tenant_id: UUID, student_id: UUID) -> ReferralSummary:
        summary = ReferralSummary(student_id=student_id)
        for record in self.list_referrals(tenant_id, referrer_student_id=student_id):
            summary.total += 1
            setattr(summary, record.status.value, getattr(summary, record.status.value) + 1)
            summary.points_earned += record.points_awarded
            summary.coins_earned += record.coins_awarded
        return summary

    def conversion_rate(self, tenant_id: UUID) -> float:
        records = self.list_referrals(tenant_id)
        if not records:
            return 0.0
        enrolled = sum(1 for r in records if r.status == ReferralStatus.ENROLLED)
        return round(enrolled / len(records), 4)

    def _run(self, record: ReferralRecord, step) -> ReferralTransitionResponse:
        def work(uow: UnitOfWork) -> ReferralTransitionResponse:
            row = uow.get("referrals", record.id)
            return step(uow, row)

        return self.ledger.atomic([student_key(record.tenant_id, record.referrer_student_id)], work)

    def _move(
        self,
        uow: UnitOfWork,
        row: dict,
        target: ReferralStatus,
        at: datetime,
        notes: Optional[str] = None,
    ) -> ReferralTransitionResponse:
        current = row["status"]
        if current not in ALLOWED_TRANSITIONS[target]:
            raise InvalidStateTransitionError(
                f"Referral {row['id']} cannot move from {current.value} to {target.value}"
            )
        changes = {"status": target, TIMESTAMP_FIELDS[target]: at, "version": row["version"] + 1}
        if notes:
            changes["notes"] = notes
        moved = copy_row(row, **changes)
        uow.put("referrals", row["id"], moved, expected_version=row["version"])
        uow.after_commit(lambda: logger.info(
            "Referral %s moved %s -> %s", row["id"], current.value, target.value
        ))
        return ReferralTransitionResponse(referral=ReferralRecord(**moved), message=f"Referral {target.value}")

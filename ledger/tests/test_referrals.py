"""
Unit Tests for the Referral Funnel

Tests cover:
1. Reward computation with campaigns and tiers
2. Lifecycle transitions and terminal states
3. Exactly-once payout on enrollment
4. Expiry sweep
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from ledger.events import EventType
from ledger.exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from ledger.models import (
    CampaignTier,
    CreateCampaignRequest,
    ReferralStatus,
    RelatedEntity,
    SubmitReferralRequest,
    TransactionCategory,
)
from ledger.referrals import compute_reward
from ledger.storage import DEMO_STUDENT_IDS, DEMO_TENANT_ID, utcnow


TENANT_ID = DEMO_TENANT_ID
STUDENT_ID, OTHER_STUDENT_ID = DEMO_STUDENT_IDS


def create_campaign(engine, admin, base_points=100, base_coins=0, multiplier="1.0", tiers=None, **overrides):
    values = dict(
        name="Spring referrals",
        base_points=base_points,
        base_coins=base_coins,
        multiplier=Decimal(multiplier),
        tiers=tiers if tiers is not None else [
            CampaignTier(min_referrals=1, bonus_points=0),
            CampaignTier(min_referrals=3, bonus_points=50),
        ],
        starts_at=utcnow() - timedelta(days=1),
    )
    values.update(overrides)
    return engine.referrals.create_campaign(admin, CreateCampaignRequest(**values))


def submit(engine, actor, phone="+1 555 0100", referrer=STUDENT_ID, name="Pat Prospect"):
    return engine.referrals.submit(actor, SubmitReferralRequest(
        referrer_student_id=referrer, prospect_name=name, prospect_phone=phone,
    ))


def enroll_new(engine, teacher, admin, phone, referrer=STUDENT_ID):
    record = submit(engine, teacher, phone=phone, referrer=referrer)
    engine.referrals.contact(teacher, record.id)
    return engine.referrals.enroll(admin, record.id)


class TestComputeReward:
    """Tests for the reward formula."""

    def test_no_campaign_uses_base(self):
        reward = compute_reward(100, 10, None, 1)

        assert reward.total_points == 100
        assert reward.total_coins == 10
        assert reward.tier_name is None

    def test_multiplier_rounds_half_up(self, engine, admin):
        campaign = create_campaign(engine, admin, base_points=25, multiplier="1.5", tiers=[])

        reward = compute_reward(100, 10, campaign, 1)

        assert reward.total_points == 38
        assert reward.multiplier == Decimal("1.5")

    def test_highest_tier_reached(self, engine, admin):
        campaign = create_campaign(engine, admin)

        assert compute_reward(0, 0, campaign, 2).total_points == 100
        third = compute_reward(0, 0, campaign, 3)
        assert third.total_points == 150
        assert third.tier_name == "3+"
        assert compute_reward(0, 0, campaign, 7).tier_bonus_points == 50


class TestCampaigns:
    """Tests for campaign definitions."""

    def test_tiers_must_ascend(self, engine, admin):
        with pytest.raises(ValidationError):
            create_campaign(engine, admin, tiers=[
                CampaignTier(min_referrals=3, bonus_points=50),
                CampaignTier(min_referrals=3, bonus_points=80),
            ])

    def test_window_must_be_ordered(self, engine, admin):
        now = utcnow()
        with pytest.raises(ValidationError):
            create_campaign(engine, admin, starts_at=now, ends_at=now - timedelta(hours=1))

    def test_active_campaign_picks_latest(self, engine, admin):
        create_campaign(engine, admin, name="Old", starts_at=utcnow() - timedelta(days=30))
        newer = create_campaign(engine, admin, name="New")

        assert engine.referrals.active_campaign(TENANT_ID, utcnow()).id == newer.id

    def test_teacher_cannot_create(self, engine, teacher):
        with pytest.raises(PermissionDeniedError):
            create_campaign(engine, teacher)

    def test_naive_window_read_as_utc(self, engine, teacher, admin):
        """A campaign window given without a timezone still attaches and pays out."""
        campaign = create_campaign(engine, admin, starts_at=datetime(2020, 1, 1), tiers=[])

        record = submit(engine, teacher)
        engine.referrals.contact(teacher, record.id)
        response = engine.referrals.enroll(admin, record.id)

        assert campaign.starts_at.tzinfo is not None
        assert record.campaign_id == campaign.id
        assert response.transaction.points_delta == 100


class TestLifecycle:
    """Tests for referral transitions."""

    def test_submit_starts_pending(self, engine, teacher):
        record = submit(engine, teacher)

        assert record.status == ReferralStatus.PENDING
        assert record.created_by == teacher.id

    def test_duplicate_open_prospect_rejected(self, engine, teacher):
        submit(engine, teacher, phone="+1 (555) 0100")

        with pytest.raises(ConflictError):
            submit(engine, teacher, phone="+1 555-0100", referrer=OTHER_STUDENT_ID)

    def test_prospect_can_be_referred_again_after_decline(self, engine, teacher, admin):
        record = submit(engine, teacher)
        engine.referrals.contact(teacher, record.id)
        engine.referrals.decline(admin, record.id, "Chose another school")

        again = submit(engine, teacher, referrer=OTHER_STUDENT_ID)

        assert again.status == ReferralStatus.PENDING

    def test_enroll_requires_contact(self, engine, teacher, admin):
        record = submit(engine, teacher)

        with pytest.raises(InvalidStateTransitionError):
            engine.referrals.enroll(admin, record.id)

    def test_declined_is_terminal(self, engine, teacher, admin):
        record = submit(engine, teacher)
        engine.referrals.contact(teacher, record.id)
        declined = engine.referrals.decline(admin, record.id, "Not interested")

        assert declined.referral.status == ReferralStatus.DECLINED
        assert declined.referral.notes == "Not interested"
        with pytest.raises(ConflictError):
            engine.referrals.enroll(admin, record.id)
        assert engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID) == []


class TestEnrollmentPayout:
    """Tests for paying referrers."""

    def test_enroll_pays_base_without_campaign(self, engine, teacher, admin, settings):
        response = enroll_new(engine, teacher, admin, phone="555-0001")

        assert response.referral.status == ReferralStatus.ENROLLED
        assert response.transaction.points_delta == settings.REFERRAL_BASE_POINTS
        assert response.transaction.coins_delta == settings.REFERRAL_BASE_COINS
        assert response.transaction.category == TransactionCategory.REFERRAL
        assert response.transaction.related_entity_type == RelatedEntity.REFERRAL
        assert response.referral.transaction_id == response.transaction.id
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == settings.REFERRAL_BASE_POINTS

    def test_third_enrollment_reaches_tier(self, engine, teacher, admin):
        """With tiers {1: +0, 3: +50} the third enrollment pays base + 50."""
        create_campaign(engine, admin, base_points=100)

        first = enroll_new(engine, teacher, admin, phone="555-0001")
        second = enroll_new(engine, teacher, admin, phone="555-0002")
        third = enroll_new(engine, teacher, admin, phone="555-0003")

        assert first.transaction.points_delta == 100
        assert second.transaction.points_delta == 100
        assert third.transaction.points_delta == 150
        assert third.referral.reward_tier == "3+"
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 350

    def test_large_referral_bonus_bypasses_approval(self, engine, teacher, admin):
        create_campaign(engine, admin, base_points=500, tiers=[])

        response = enroll_new(engine, teacher, admin, phone="555-0001")

        assert response.transaction.points_delta == 500
        assert engine.approvals.list_pending(TENANT_ID) == []

    def test_double_enroll_pays_once(self, engine, teacher, admin):
        """A second enroll conflicts and leaves the ledger untouched."""
        response = enroll_new(engine, teacher, admin, phone="555-0001")

        with pytest.raises(ConflictError):
            engine.referrals.enroll(admin, response.referral.id)

        entries = engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID)
        assert len(entries) == 1

    def test_enroll_publishes_event(self, engine, teacher, admin):
        received = []
        engine.ledger.events.subscribe(received.append, EventType.REFERRAL_ENROLLED)

        enroll_new(engine, teacher, admin, phone="555-0001")

        assert len(received) == 1
        assert received[0].payload["referrer_student_id"] == str(STUDENT_ID)

    def test_summary(self, engine, teacher, admin, settings):
        enroll_new(engine, teacher, admin, phone="555-0001")
        submit(engine, teacher, phone="555-0002")

        summary = engine.referrals.summary(TENANT_ID, STUDENT_ID)

        assert summary.total == 2
        assert summary.enrolled == 1
        assert summary.pending == 1
        assert summary.points_earned == settings.REFERRAL_BASE_POINTS
        assert engine.referrals.conversion_rate(TENANT_ID) == 0.5


class TestExpiry:
    """Tests for the retention sweep."""

    def test_expire_stale_records(self, engine, teacher, admin, settings):
        pending = submit(engine, teacher, phone="555-0001")
        contacted = submit(engine, teacher, phone="555-0002")
        engine.referrals.contact(teacher, contacted.id)
        enrolled = enroll_new(engine, teacher, admin, phone="555-0003")

        later = utcnow() + timedelta(days=settings.REFERRAL_RETENTION_DAYS + 1)
        expired = engine.referrals.expire_stale(admin, TENANT_ID, now=later)

        assert {r.id for r in expired} == {pending.id, contacted.id}
        assert all(r.status == ReferralStatus.EXPIRED for r in expired)
        assert engine.referrals.get(enrolled.referral.id).status == ReferralStatus.ENROLLED

    def test_recent_records_survive(self, engine, teacher, admin):
        submit(engine, teacher)

        assert engine.referrals.expire_stale(admin, TENANT_ID) == []

    def test_naive_now_read_as_utc(self, engine, teacher, admin, settings):
        record = submit(engine, teacher)
        later = (utcnow() + timedelta(days=settings.REFERRAL_RETENTION_DAYS + 1)).replace(tzinfo=None)

        expired = engine.referrals.expire_stale(admin, TENANT_ID, now=later)

        assert [r.id for r in expired] == [record.id]

    def test_expired_cannot_enroll(self, engine, teacher, admin, settings):
        record = submit(engine, teacher)
        later = utcnow() + timedelta(days=settings.REFERRAL_RETENTION_DAYS + 1)
        engine.referrals.expire_stale(admin, TENANT_ID, now=later)

        with pytest.raises(ConflictError):
            engine.referrals.contact(teacher, record.id)

from dataclasses import dataclass
from typing import Optional

from .achievements import AchievementEngine
from .approvals import ApprovalWorkflow
from .config import Settings
from .events import EventBus
from .queries import RankingQueryService
from .redemptions import RewardsRedemption
from .referrals import ReferralFunnel
from .service import LedgerService
from .storage import InMemoryStorage


@dataclass
class PointsEngine:
    ledger: LedgerService
    approvals: ApprovalWorkflow
    achievements: AchievementEngine
    redemptions: RewardsRedemption
    referrals: ReferralFunnel
    queries: RankingQueryService


def build_engine(
    storage: Optional[InMemoryStorage] = None,
    settings: Optional[Settings] = None,
    events: Optional[EventBus] = None,
) -> PointsEngine:
    ledger = LedgerService(storage=storage, settings=settings, events=events)
    approvals = ApprovalWorkflow(ledger)
    achievements = AchievementEngine(ledger)
    redemptions = RewardsRedemption(ledger)
    referrals = ReferralFunnel(ledger)
    queries = RankingQueryService(ledger, achievements, referrals, approvals)
    return PointsEngine(
        ledger=ledger,
        approvals=approvals,
        achievements=achievements,
        redemptions=redemptions,
        referrals=referrals,
        queries=queries,
    )

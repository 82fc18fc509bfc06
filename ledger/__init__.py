"""
Points Ledger & Ranking Engine

This module provides:
- An append-only, tenant-scoped ledger of points and coins
- A cached ranking aggregate per student, kept in step with every commit
- Threshold-based approval of large manual awards
- Rule-driven achievements, a reward catalog with redemptions, and referral payouts
- Dense-rank leaderboards and history queries
"""

from .engine import PointsEngine, build_engine
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VersionConflictError,
)
from .models import (
    Actor,
    ActorRole,
    RankingAggregate,
    Transaction,
    TransactionCategory,
    TransactionDraft,
    TransactionKind,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "PointsEngine",
    "build_engine",
    "LedgerService",
    "InMemoryStorage",
    "Actor",
    "ActorRole",
    "RankingAggregate",
    "Transaction",
    "TransactionCategory",
    "TransactionDraft",
    "TransactionKind",
    "LedgerServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateTransitionError",
    "VersionConflictError",
    "InsufficientBalanceError",
    "PermissionDeniedError",
]

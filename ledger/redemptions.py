import logging
from typing import Optional
from uuid import UUID, uuid4

from .events import EventType
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Actor,
    CreateRewardRequest,
    RedeemRequest,
    Redemption,
    RedemptionStatus,
    RelatedEntity,
    Reward,
    TransactionCategory,
    TransactionDraft,
    TransactionKind,
)
from .service import LedgerService
from .storage import UnitOfWork, copy_row, student_key, utcnow

logger = logging.getLogger(__name__)

CLOSED_STATUSES = frozenset({RedemptionStatus.CANCELLED, RedemptionStatus.REJECTED})


def reward_key(reward_id: UUID) -> tuple:
    return ("reward", reward_id)


class RewardsRedemption:
    """Coin spending against the reward catalog.

    The balance check replays the student's ledger inside the same unit of
    work that appends the debit, with the student's lock held, so two
    redemptions can never both spend the same coins. Rejections and
    cancellations refund through a compensating transaction.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage
        self.settings = ledger.settings

    # --- catalog ----------------------------------------------------------

    def create_reward(self, actor: Actor, request: CreateRewardRequest) -> Reward:
        self.ledger.authorize(actor, actor.tenant_id, elevated=True)
        self._validate_reward(request)

        reward_id = uuid4()
        reward_data = {
            "id": reward_id,
            "tenant_id": actor.tenant_id,
            "created_by": actor.id,
            "created_at": utcnow(),
            "is_active": True,
            **request.model_dump(),
        }
        reward_data["name"] = request.name.strip()
        with self.storage.unit_of_work([reward_key(reward_id)]) as uow:
            uow.put("rewards", reward_id, reward_data)
        logger.info("Reward %s (%s, %d coins) created by %s", reward_id, request.name, request.coin_cost, actor.id)
        return Reward(**reward_data)

    def set_reward_active(self, actor: Actor, reward_id: UUID, is_active: bool) -> Reward:
        reward = self.get_reward(reward_id)
        self.ledger.authorize(actor, reward.tenant_id, elevated=True)
        with self.storage.unit_of_work([reward_key(reward_id)]) as uow:
            updated = copy_row(uow.get("rewards", reward_id), is_active=is_active)
            uow.put("rewards", reward_id, updated)
        return Reward(**updated)

    def get_reward(self, reward_id: UUID) -> Reward:
        row = self.storage.get("rewards", reward_id)
        if row is None:
            raise NotFoundError(f"Reward {reward_id} not found")
        return Reward(**row)

    def list_rewards(self, tenant_id: UUID, available_only: bool = False) -> list[Reward]:
        now = utcnow()
        rewards = [
            Reward(**row) for row in self.storage.snapshot("rewards") if row["tenant_id"] == tenant_id
        ]
        if available_only:
            rewards = [r for r in rewards if r.is_available_at(now)]
        rewards.sort(key=lambda r: (r.coin_cost, r.name))
        return rewards

    # --- redemptions ------------------------------------------------------

    def redeem(self, actor: Actor, request: RedeemRequest) -> Redemption:
        reward = self.get_reward(request.reward_id)
        self.ledger.authorize(actor, reward.tenant_id)
        self.storage.require_student(reward.tenant_id, request.student_id)

        def work(uow: UnitOfWork) -> Redemption:
            reward_row = uow.get("rewards", reward.id)
            current = Reward(**reward_row)
            now = utcnow()
            if not current.is_available_at(now):
                raise ValidationError(f"Reward {reward.id} is not available")
            if current.inventory_quantity is not None and current.inventory_quantity <= 0:
                raise ConflictError(f"Reward {reward.id} is out of stock")
            if current.max_redemptions_per_student is not None:
                held = sum(
                    1 for row in uow.rows("redemptions")
                    if row["reward_id"] == reward.id
                    and row["student_id"] == request.student_id
                    and row["status"] not in CLOSED_STATUSES
                )
                if held >= current.max_redemptions_per_student:
                    raise ConflictError(
                        f"Student {request.student_id} reached the limit of "
                        f"{current.max_redemptions_per_student} for reward {reward.id}"
                    )

            balance = self.ledger.store.replay(current.tenant_id, request.student_id, uow)
            if balance.available_coins < current.coin_cost:
                raise InsufficientBalanceError(
                    f"Student {request.student_id} has {balance.available_coins} coins, "
                    f"reward {reward.id} costs {current.coin_cost}"
                )

            redemption_id = uuid4()
            transaction = self.ledger.commit(uow, TransactionDraft(
                student_id=request.student_id,
                tenant_id=current.tenant_id,
                kind=TransactionKind.REDEMPTION,
                coins_delta=-current.coin_cost,
                reason=f"Redeemed: {current.name}",
                category=TransactionCategory.REDEMPTION,
                awarded_by=actor.id,
                related_entity_type=RelatedEntity.REDEMPTION,
                related_entity_id=redemption_id,
            ))
            if current.inventory_quantity is not None:
                uow.put("rewards", reward.id, copy_row(
                    reward_row, inventory_quantity=current.inventory_quantity - 1
                ))

            status = RedemptionStatus.PENDING if current.requires_approval else RedemptionStatus.APPROVED
            redemption_data = {
                "id": redemption_id,
                "tenant_id": current.tenant_id,
                "student_id": request.student_id,
                "reward_id": reward.id,
                "coins_spent": current.coin_cost,
                "status": status,
                "request_notes": request.notes,
                "admin_notes": None,
                "transaction_id": transaction.id,
                "refund_transaction_id": None,
                "requested_by": actor.id,
                "redeemed_at": now,
                "approved_by": None if current.requires_approval else actor.id,
                "approved_at": None if current.requires_approval else now,
                "delivered_by": None,
                "delivered_at": None,
                "cancelled_at": None,
                "version": 1,
            }
            uow.put("redemptions", redemption_id, redemption_data)
            self._announce(uow, redemption_data)
            return Redemption(**redemption_data)

        return self.ledger.atomic(
            [student_key(reward.tenant_id, request.student_id), reward_key(reward.id)], work
        )

    def approve(self, actor: Actor, redemption_id: UUID, notes: Optional[str] = None) -> Redemption:
        return self._transition(
            actor, redemption_id, {RedemptionStatus.PENDING}, RedemptionStatus.APPROVED,
            notes, refund=False, approved_by=actor.id, approved_at=utcnow(),
        )

    def deliver(self, actor: Actor, redemption_id: UUID, notes: Optional[str] = None) -> Redemption:
        return self._transition(
            actor, redemption_id, {RedemptionStatus.APPROVED}, RedemptionStatus.DELIVERED,
            notes, refund=False, delivered_by=actor.id, delivered_at=utcnow(),
        )

    def reject(self, actor: Actor, redemption_id: UUID, notes: Optional[str] = None) -> Redemption:
        return self._transition(
            actor, redemption_id, {RedemptionStatus.PENDING}, RedemptionStatus.REJECTED,
            notes, refund=True,
        )

    def cancel(self, actor: Actor, redemption_id: UUID, notes: Optional[str] = None) -> Redemption:
        return self._transition(
            actor, redemption_id, {RedemptionStatus.PENDING, RedemptionStatus.APPROVED},
            RedemptionStatus.CANCELLED, notes, refund=True, cancelled_at=utcnow(),
        )

    def get(self, redemption_id: UUID) -> Redemption:
        row = self.storage.get("redemptions", redemption_id)
        if row is None:
            raise NotFoundError(f"Redemption {redemption_id} not found")
        return Redemption(**row)

    def list_for_student(self, tenant_id: UUID, student_id: UUID) -> list[Redemption]:
        redemptions = [
            Redemption(**row) for row in self.storage.snapshot("redemptions")
            if row["tenant_id"] == tenant_id and row["student_id"] == student_id
        ]
        redemptions.sort(key=lambda r: r.redeemed_at, reverse=True)
        return redemptions

    def _transition(
        self,
        actor: Actor,
        redemption_id: UUID,
        allowed_from: set[RedemptionStatus],
        target: RedemptionStatus,
        notes: Optional[str],
        refund: bool,
        **changes,
    ) -> Redemption:
        redemption = self.get(redemption_id)
        self.ledger.authorize(actor, redemption.tenant_id, elevated=True)

        def work(uow: UnitOfWork) -> Redemption:
            row = uow.get("redemptions", redemption_id)
            if row["status"] not in allowed_from:
                raise InvalidStateTransitionError(
                    f"Cannot move redemption {redemption_id} from {row['status'].value} to {target.value}"
                )
            refund_id = None
            if refund:
                refund_id = self._refund(uow, actor, row)
            updated = copy_row(
                row,
                status=target,
                admin_notes=notes if notes is not None else row["admin_notes"],
                refund_transaction_id=refund_id,
                version=row["version"] + 1,
                **changes,
            )
            uow.put("redemptions", redemption_id, updated, expected_version=row["version"])
            self._announce(uow, updated)
            return Redemption(**updated)

        return self.ledger.atomic(
            [student_key(redemption.tenant_id, redemption.student_id), reward_key(redemption.reward_id)], work
        )

    def _refund(self, uow: UnitOfWork, actor: Actor, row: dict) -> UUID:
        reward_row = uow.get("rewards", row["reward_id"])
        transaction = self.ledger.commit(uow, TransactionDraft(
            student_id=row["student_id"],
            tenant_id=row["tenant_id"],
            kind=TransactionKind.REDEMPTION,
            coins_delta=row["coins_spent"],
            reason=f"Refund: {reward_row['name']}",
            category=TransactionCategory.REDEMPTION,
            awarded_by=actor.id,
            related_entity_type=RelatedEntity.REDEMPTION,
            related_entity_id=row["id"],
        ))
        if reward_row["inventory_quantity"] is not None:
            uow.put("rewards", row["reward_id"], copy_row(
                reward_row, inventory_quantity=reward_row["inventory_quantity"] + 1
            ))
        return transaction.id

    def _announce(self, uow: UnitOfWork, row: dict) -> None:
        def _emit():
            logger.info("Redemption %s for student %s is %s", row["id"], row["student_id"], row["status"].value)
            self.ledger.emit(EventType.REDEMPTION_UPDATED, row["tenant_id"], {
                "redemption_id": str(row["id"]),
                "student_id": str(row["student_id"]),
                "status": row["status"].value,
            })

        uow.after_commit(_emit)

    def _validate_reward(self, request: CreateRewardRequest) -> None:
        if not request.name or not request.name.strip():
            raise ValidationError("Reward name is required")
        if request.coin_cost < 1 or request.coin_cost > self.settings.REWARD_MAX_COIN_COST:
            raise ValidationError(
                f"Coin cost must be between 1 and {self.settings.REWARD_MAX_COIN_COST}"
            )
        if request.inventory_quantity is not None and request.inventory_quantity < 1:
            raise ValidationError("Inventory quantity must be at least 1")
        if request.max_redemptions_per_student is not None and request.max_redemptions_per_student < 1:
            raise ValidationError("Max redemptions per student must be at least 1")
        if request.valid_from and request.valid_until and request.valid_until <= request.valid_from:
            raise ValidationError("valid_until must be after valid_from")

"""
Token Metering Service - Per-project, per-model token balances.

A project's balance lives on its authoritative token pack: the non-expired
pack with the latest purchased_at. Balance mutations happen only while the
pack row is locked with SELECT ... FOR UPDATE, inside the caller's
transaction.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import TokenPack, TokenTransaction, TokenUsageLog
from app.exceptions import (
    DataIntegrityError,
    InsufficientTokensError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.domain import (
    BalanceReconciliation,
    TokenBalance,
    TokenDeduction,
    UsageSummary,
)

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_token_map(raw: object) -> dict[str, int]:
    """Normalize a JSONB token map, dropping non-numeric entries."""
    if not isinstance(raw, dict):
        return {}
    result: dict[str, int] = {}
    for key, value in raw.items():
        try:
            result[str(key)] = int(value or 0)
        except (TypeError, ValueError):
            continue
    return result


class TokenMeteringService:
    """
    Token balance reads and locked deductions.

    Deductions flush but never commit; the assistant service commits the
    deduction together with the chat messages and the usage log.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize token metering service with database session."""
        self.session = session

    async def get_balance(self, project_id: UUID) -> TokenBalance:
        """Current balance of a project. No active pack reads as empty."""
        pack = await self._find_active_pack(project_id)
        return self._pack_to_balance(project_id, pack)

    async def check_balance(self, project_id: UUID, model_key: str, required: int) -> TokenBalance:
        """
        Verify the project can afford `required` tokens of a model.

        Raises:
            InsufficientTokensError: Balance for the model is below required
        """
        balance = await self.get_balance(project_id)
        available = balance.for_model(model_key)

        if balance.pack_id is None or available < required:
            logger.info(
                "token_balance_insufficient",
                project_id=str(project_id),
                model=model_key,
                balance=available,
                required=required,
            )
            raise InsufficientTokensError(model_key, available, required)

        return balance

    async def deduct(self, pack_id: UUID, model_key: str, tokens: int) -> TokenDeduction:
        """
        Deduct tokens from a pack under row lock.

        The balance is floored at 0. Flushes and verifies but does not commit.

        Raises:
            ResourceNotFoundError: Pack doesn't exist
            DataIntegrityError: Negative deduction or verification mismatch
        """
        if tokens < 0:
            raise DataIntegrityError(f"Cannot deduct a negative amount: {tokens}")

        pack = await self._lock_pack_for_update(pack_id)
        if pack is None:
            raise ResourceNotFoundError("TokenPack", pack_id)

        remaining = _as_token_map(pack.remaining_tokens)
        balance_before = remaining.get(model_key, 0)
        balance_after = max(0, balance_before - tokens)

        # Assign a new mapping so the JSONB change is tracked
        new_remaining = {**remaining, model_key: balance_after}
        pack.remaining_tokens = new_remaining
        pack.updated_at = _utc_now()
        await self.session.flush()

        verified_pack = await self.session.get(TokenPack, pack_id)
        if verified_pack is None:
            raise WriteVerificationError(f"TokenPack {pack_id} disappeared after update")

        verified_balance = _as_token_map(verified_pack.remaining_tokens).get(model_key, 0)
        if verified_balance != balance_after:
            raise DataIntegrityError(
                f"Token balance mismatch: expected {balance_after}, got {verified_balance}"
            )

        logger.info(
            "tokens_deducted",
            pack_id=str(pack_id),
            model=model_key,
            tokens=tokens,
            balance_before=balance_before,
            balance_after=balance_after,
        )

        return TokenDeduction(
            pack_id=pack_id,
            model_key=model_key,
            balance_before=balance_before,
            balance_after=balance_after,
            remaining=new_remaining,
        )

    def record_usage(
        self,
        project_id: UUID,
        user_id: UUID | None,
        pack_id: UUID | None,
        model_key: str,
        tokens_used: int,
        action: str,
    ) -> TokenUsageLog:
        """Stage a consumption ledger row in the current transaction."""
        usage = TokenUsageLog(
            user_id=user_id,
            project_id=project_id,
            token_pack_id=pack_id,
            model=model_key,
            tokens_used=tokens_used,
            action=action,
        )
        self.session.add(usage)
        return usage

    async def list_transactions(
        self, project_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[TokenTransaction], int]:
        """Purchase ledger of a project, newest first, with the total count."""
        count_stmt = (
            select(func.count())
            .select_from(TokenTransaction)
            .where(TokenTransaction.project_id == project_id)
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.project_id == project_id)
            .order_by(TokenTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), int(total or 0)

    async def list_usage_logs(self, project_id: UUID, limit: int = 100) -> list[TokenUsageLog]:
        """Consumption ledger of a project, newest first."""
        stmt = (
            select(TokenUsageLog)
            .where(TokenUsageLog.project_id == project_id)
            .order_by(TokenUsageLog.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_usage_summary(self, project_id: UUID) -> list[UsageSummary]:
        """Tokens consumed and call counts per model."""
        stmt = (
            select(
                TokenUsageLog.model,
                func.coalesce(func.sum(TokenUsageLog.tokens_used), 0),
                func.count(TokenUsageLog.id),
            )
            .where(TokenUsageLog.project_id == project_id)
            .group_by(TokenUsageLog.model)
            .order_by(TokenUsageLog.model)
        )
        result = await self.session.execute(stmt)
        return [
            UsageSummary(model=model, tokens_used=int(tokens), calls=int(calls))
            for model, tokens, calls in result.all()
        ]

    async def reconcile(self, project_id: UUID) -> list[BalanceReconciliation]:
        """
        Compare the authoritative pack against the consumption ledger.

        expected_remaining = purchased - consumed (floored at 0), where
        consumed sums the usage logs charged to that pack.
        """
        pack = await self._find_active_pack(project_id)
        if pack is None:
            return []

        stmt = (
            select(TokenUsageLog.model, func.coalesce(func.sum(TokenUsageLog.tokens_used), 0))
            .where(TokenUsageLog.token_pack_id == pack.id)
            .group_by(TokenUsageLog.model)
        )
        result = await self.session.execute(stmt)
        consumed_by_model = {model: int(tokens) for model, tokens in result.all()}

        purchased = _as_token_map(pack.tokens_purchased)
        remaining = _as_token_map(pack.remaining_tokens)
        models = sorted(set(purchased) | set(remaining) | set(consumed_by_model))

        report = []
        for model in models:
            bought = purchased.get(model, 0)
            consumed = consumed_by_model.get(model, 0)
            report.append(
                BalanceReconciliation(
                    project_id=project_id,
                    pack_id=pack.id,
                    model=model,
                    purchased=bought,
                    consumed=consumed,
                    expected_remaining=max(0, bought - consumed),
                    actual_remaining=remaining.get(model, 0),
                )
            )

        drifting = [r.model for r in report if r.drift != 0]
        if drifting:
            logger.warning(
                "token_balance_drift_detected",
                project_id=str(project_id),
                pack_id=str(pack.id),
                models=drifting,
            )

        return report

    async def find_active_pack(self, project_id: UUID) -> TokenPack | None:
        """Authoritative pack of a project, without locking."""
        return await self._find_active_pack(project_id)

    async def lock_active_pack(self, project_id: UUID) -> TokenPack | None:
        """Authoritative pack of a project, locked FOR UPDATE."""
        stmt = self._active_pack_stmt(project_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ========================================================================
    # Private helpers
    # ========================================================================

    def _active_pack_stmt(self, project_id: UUID) -> Select[tuple[TokenPack]]:
        return (
            select(TokenPack)
            .where(TokenPack.project_id == project_id, TokenPack.expires_at > _utc_now())
            .order_by(TokenPack.purchased_at.desc())
            .limit(1)
        )

    async def _find_active_pack(self, project_id: UUID) -> TokenPack | None:
        result = await self.session.execute(self._active_pack_stmt(project_id))
        return result.scalar_one_or_none()

    async def _lock_pack_for_update(self, pack_id: UUID) -> TokenPack | None:
        """Lock pack row for update (SELECT FOR UPDATE)."""
        stmt = select(TokenPack).where(TokenPack.id == pack_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _pack_to_balance(project_id: UUID, pack: TokenPack | None) -> TokenBalance:
        if pack is None:
            return TokenBalance(
                pack_id=None, project_id=project_id, remaining={}, purchased={}, expires_at=None
            )
        return TokenBalance(
            pack_id=pack.id,
            project_id=project_id,
            remaining=_as_token_map(pack.remaining_tokens),
            purchased=_as_token_map(pack.tokens_purchased),
            expires_at=pack.expires_at,
        )

"""Append-only points ledger with a reconciled balance cache."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import LedgerEntryKind, LoyaltyLedgerEntry, LoyaltyMember
from loyalty_engine.observability.loyalty import record_after_commit
from loyalty_engine.services.errors import InsufficientPointsError, ValidationError

# Kinds that may record a zero-point event (free spin, losing segment, zero-point purchase).
ZERO_DELTA_KINDS = frozenset({LedgerEntryKind.WHEEL, LedgerEntryKind.PURCHASE})
# Kinds allowed to push a balance below zero when the caller opts in.
OVERDRAW_KINDS = frozenset({LedgerEntryKind.ADJUSTMENT, LedgerEntryKind.REVERSAL})
# Point columns are 32-bit integers.
MAX_POINTS = 2**31 - 1


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size)) if self.page_size else 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def as_dict(self) -> dict[str, int | bool]:
        return {
            "page": self.page,
            "page_size": self.page_size,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
        }


class LedgerStore:
    """Record ledger entries and fold them into member balances."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def lock_member(self, member_id: UUID) -> LoyaltyMember | None:
        """Load a member row for update, refreshing any stale identity-map copy."""

        stmt = (
            select(LoyaltyMember)
            .where(LoyaltyMember.id == member_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _fold(self, member_id: UUID) -> tuple[int, int]:
        stmt = select(
            func.coalesce(func.sum(LoyaltyLedgerEntry.points_delta), 0),
            func.coalesce(func.max(LoyaltyLedgerEntry.sequence), 0),
        ).where(LoyaltyLedgerEntry.member_id == member_id)
        result = await self._db.execute(stmt)
        total, last_sequence = result.one()
        return int(total), int(last_sequence)

    async def balance_of(self, member_id: UUID) -> int:
        """Return the authoritative balance: the sum of all ledger deltas."""

        balance, _ = await self._fold(member_id)
        return balance

    async def reconcile(self, member: LoyaltyMember) -> tuple[int, int]:
        """Realign the cached balance with the ledger fold.

        Returns the folded balance and the last assigned sequence.
        """

        balance, last_sequence = await self._fold(member.id)
        if member.points_balance != balance:
            logger.warning(
                "Loyalty balance cache drift detected",
                member_id=str(member.id),
                cached_balance=member.points_balance,
                ledger_balance=balance,
            )
            record_after_commit(self._db, lambda store: store.record_balance_drift())
            member.points_balance = balance
        if (member.last_sequence or 0) != last_sequence:
            member.last_sequence = last_sequence
        return balance, last_sequence

    async def append(
        self,
        member: LoyaltyMember,
        *,
        kind: LedgerEntryKind,
        points_delta: int,
        description: str | None = None,
        monetary_amount: Decimal | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        allow_overdraw: bool = False,
    ) -> LoyaltyLedgerEntry:
        """Append an entry and move the cached balance in the same transaction.

        The caller holds the member row lock; the entry sequence and the member
        version make a lost race surface as an integrity or stale-data error.
        """

        if isinstance(points_delta, bool) or not isinstance(points_delta, int):
            raise ValidationError("Ledger entries require an integral point delta")
        if points_delta == 0 and kind not in ZERO_DELTA_KINDS:
            raise ValidationError(f"Ledger entries of kind '{kind.value}' require a non-zero delta")
        if abs(points_delta) > MAX_POINTS:
            raise ValidationError(f"Point delta {points_delta} is outside the supported range")

        balance, last_sequence = await self.reconcile(member)
        new_balance = balance + points_delta
        if abs(new_balance) > MAX_POINTS:
            raise ValidationError(f"Balance {new_balance} would exceed the supported range")
        if points_delta < 0 and new_balance < 0:
            if not (allow_overdraw and kind in OVERDRAW_KINDS):
                raise InsufficientPointsError(balance=balance, required=-points_delta)
            logger.warning(
                "Loyalty balance overdrawn",
                member_id=str(member.id),
                kind=kind.value,
                balance_after=new_balance,
            )

        sequence = last_sequence + 1
        entry = LoyaltyLedgerEntry(
            member_id=member.id,
            brand_id=member.brand_id,
            sequence=sequence,
            kind=kind,
            points_delta=points_delta,
            balance_after=new_balance,
            monetary_amount=monetary_amount,
            description=description,
            correlation_id=correlation_id,
            metadata_json=metadata or {},
        )
        self._db.add(entry)
        member.points_balance = new_balance
        member.last_sequence = sequence
        await self._db.flush()

        record_after_commit(self._db, lambda store: store.record_ledger_append(kind.value))
        logger.info(
            "Recorded loyalty ledger entry",
            member_id=str(member.id),
            kind=kind.value,
            points_delta=points_delta,
            balance_after=new_balance,
            sequence=sequence,
        )
        return entry

    async def get(self, entry_id: UUID) -> LoyaltyLedgerEntry | None:
        stmt = select(LoyaltyLedgerEntry).where(LoyaltyLedgerEntry.id == entry_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_reversal(self, entry: LoyaltyLedgerEntry) -> LoyaltyLedgerEntry | None:
        """Return the reversal already posted against an entry, if any."""

        stmt = select(LoyaltyLedgerEntry).where(
            LoyaltyLedgerEntry.member_id == entry.member_id,
            LoyaltyLedgerEntry.kind == LedgerEntryKind.REVERSAL,
            LoyaltyLedgerEntry.correlation_id == str(entry.id),
        )
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def history(
        self,
        member_id: UUID,
        *,
        page: int = 1,
        page_size: int = 25,
        kinds: Sequence[LedgerEntryKind] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], Pagination]:
        """Return a page of entries, newest first."""

        bounded_size = max(1, min(page_size, settings.history_max_page_size))
        bounded_page = max(1, page)

        filters = [LoyaltyLedgerEntry.member_id == member_id]
        if kinds:
            filters.append(LoyaltyLedgerEntry.kind.in_(list(kinds)))

        count_stmt = select(func.count(LoyaltyLedgerEntry.id)).where(*filters)
        total = int((await self._db.execute(count_stmt)).scalar_one())

        stmt = (
            select(LoyaltyLedgerEntry)
            .where(*filters)
            .order_by(LoyaltyLedgerEntry.sequence.desc())
            .offset((bounded_page - 1) * bounded_size)
            .limit(bounded_size)
        )
        result = await self._db.execute(stmt)
        entries = list(result.scalars().all())
        logger.debug(
            "Fetched loyalty ledger page",
            member_id=str(member_id),
            page=bounded_page,
            count=len(entries),
        )
        return entries, Pagination(page=bounded_page, page_size=bounded_size, total=total)


__all__ = ["LedgerStore", "OVERDRAW_KINDS", "Pagination", "ZERO_DELTA_KINDS"]

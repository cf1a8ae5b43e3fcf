"""Persistence for payment transfers and their per-reference aggregates.

payment_transfers holds one row per on-chain log, keyed by
(chain_id, tx_hash, log_index). payments holds one row per
(chain_id, payment_reference), recomputed from its transfers after
every ingest. Status columns on payments are only ever moved forward by
mark_confirmed / mark_finalized.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime  # noqa: TC003
from enum import Enum

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from chainpay.core.cursor_store import Cursor
from chainpay.utils.db import Payment, PaymentTransfer, least, upsert_for
from chainpay.utils.logger import get_logger

logger = get_logger("payment_store")


class PaymentStatus(str, Enum):
    OBSERVED = "observed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"


# ================================================================
# Data transfer objects
# ================================================================


@dataclass(frozen=True)
class TransferRecord:
    """One PaymentReceived log, normalized."""

    chain_id: int
    tx_hash: str
    log_index: int
    transaction_index: int | None
    block_number: int | None
    payment_reference: str
    gateway_address: str
    payer_address: str | None
    amount_wei: int | None
    observed_at: datetime

    @property
    def position(self) -> Cursor:
        return Cursor(self.block_number or 0, self.transaction_index or 0, self.log_index)

    @classmethod
    def from_model(cls, model: PaymentTransfer) -> TransferRecord:
        return cls(
            chain_id=model.chain_id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            transaction_index=model.transaction_index,
            block_number=model.block_number,
            payment_reference=model.payment_reference,
            gateway_address=model.gateway_address,
            payer_address=model.payer_address,
            amount_wei=model.amount_wei,
            observed_at=model.observed_at,
        )


@dataclass(frozen=True)
class PaymentRecord:
    """Aggregated payment for one reference."""

    chain_id: int
    payment_reference: str
    gateway_address: str
    payer_address: str | None
    total_amount_wei: int | None
    status: PaymentStatus
    created_at: datetime
    confirmed_at: datetime | None
    finalized_at: datetime | None
    first_block_number: int | None
    first_tx_hash: str | None
    first_log_index: int | None
    last_block_number: int | None
    last_tx_hash: str | None
    last_log_index: int | None

    @classmethod
    def from_model(cls, model: Payment) -> PaymentRecord:
        return cls(
            chain_id=model.chain_id,
            payment_reference=model.payment_reference,
            gateway_address=model.gateway_address,
            payer_address=model.payer_address,
            total_amount_wei=model.total_amount_wei,
            status=PaymentStatus(model.status),
            created_at=model.created_at,
            confirmed_at=model.confirmed_at,
            finalized_at=model.finalized_at,
            first_block_number=model.first_block_number,
            first_tx_hash=model.first_tx_hash,
            first_log_index=model.first_log_index,
            last_block_number=model.last_block_number,
            last_tx_hash=model.last_tx_hash,
            last_log_index=model.last_log_index,
        )


def _order_key(t: TransferRecord) -> tuple[int, int, int]:
    return (
        t.block_number if t.block_number is not None else -1,
        t.transaction_index if t.transaction_index is not None else -1,
        t.log_index,
    )


def aggregate_transfers(transfers: list[TransferRecord]) -> dict[str, object]:
    """Fold transfers sharing a reference into payments column values.

    Amount is the sum of known amounts (None if none is known). First/last
    pointers follow (block, tx index, log index) order. created_at is the
    earliest observation.
    """
    if not transfers:
        raise ValueError("cannot aggregate an empty transfer set")

    ordered = sorted(transfers, key=_order_key)
    first, last = ordered[0], ordered[-1]
    amounts = [t.amount_wei for t in ordered if t.amount_wei is not None]
    payer = next((t.payer_address for t in ordered if t.payer_address), None)

    return {
        "gateway_address": first.gateway_address,
        "payer_address": payer,
        "total_amount_wei": sum(amounts) if amounts else None,
        "created_at": min(t.observed_at for t in ordered),
        "first_block_number": first.block_number,
        "first_tx_hash": first.tx_hash,
        "first_log_index": first.log_index,
        "last_block_number": last.block_number,
        "last_tx_hash": last.tx_hash,
        "last_log_index": last.log_index,
    }


# ================================================================
# Store
# ================================================================


class PaymentStore:
    """Idempotent writes for transfers and aggregated payments.

    Each public method runs in its own session and commits before
    returning.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert_transfer(self, transfer: TransferRecord) -> None:
        """Insert a transfer, or merge it into the existing row for the same log.

        Nullable fields already set are never overwritten. block_number,
        gateway_address and payment_reference take the latest write.
        observed_at keeps the earliest value.
        """
        async with self._session_factory() as session:
            stmt = upsert_for(session, PaymentTransfer).values(
                chain_id=transfer.chain_id,
                tx_hash=transfer.tx_hash.lower(),
                log_index=transfer.log_index,
                transaction_index=transfer.transaction_index,
                block_number=transfer.block_number,
                payment_reference=transfer.payment_reference,
                gateway_address=transfer.gateway_address.lower(),
                payer_address=transfer.payer_address.lower() if transfer.payer_address else None,
                amount_wei=transfer.amount_wei,
                observed_at=transfer.observed_at,
            )
            ex = stmt.excluded
            cur = PaymentTransfer.__table__.c
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain_id", "tx_hash", "log_index"],
                set_={
                    "transaction_index": func.coalesce(cur.transaction_index, ex.transaction_index),
                    "payer_address": func.coalesce(cur.payer_address, ex.payer_address),
                    "amount_wei": func.coalesce(cur.amount_wei, ex.amount_wei),
                    "block_number": func.coalesce(ex.block_number, cur.block_number),
                    "gateway_address": ex.gateway_address,
                    "payment_reference": ex.payment_reference,
                    "observed_at": least(session, cur.observed_at, ex.observed_at),
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def upsert_payment(self, chain_id: int, payment_reference: str) -> PaymentRecord | None:
        """Recompute the aggregate for a reference and persist it.

        status, confirmed_at and finalized_at of an existing row are kept.

        Returns:
            The stored payment, or None if the reference has no transfers.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransfer).where(
                    PaymentTransfer.chain_id == chain_id,
                    PaymentTransfer.payment_reference == payment_reference,
                )
            )
            transfers = [TransferRecord.from_model(m) for m in result.scalars().all()]
            if not transfers:
                return None

            values = aggregate_transfers(transfers)
            stmt = upsert_for(session, Payment).values(
                chain_id=chain_id,
                payment_reference=payment_reference,
                status=PaymentStatus.OBSERVED.value,
                **values,
            )
            ex = stmt.excluded
            cur = Payment.__table__.c
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain_id", "payment_reference"],
                set_={
                    "gateway_address": ex.gateway_address,
                    "payer_address": func.coalesce(ex.payer_address, cur.payer_address),
                    "total_amount_wei": ex.total_amount_wei,
                    "created_at": least(session, cur.created_at, ex.created_at),
                    "first_block_number": ex.first_block_number,
                    "first_tx_hash": ex.first_tx_hash,
                    "first_log_index": ex.first_log_index,
                    "last_block_number": ex.last_block_number,
                    "last_tx_hash": ex.last_tx_hash,
                    "last_log_index": ex.last_log_index,
                },
            )
            await session.execute(stmt)
            await session.commit()

            row = await session.get(Payment, (chain_id, payment_reference), populate_existing=True)
            return PaymentRecord.from_model(row) if row is not None else None

    async def mark_confirmed(
        self, chain_id: int, payment_reference: str, confirmed_at: datetime
    ) -> bool:
        """observed → confirmed. Returns True only if the row changed."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Payment)
                .where(
                    Payment.chain_id == chain_id,
                    Payment.payment_reference == payment_reference,
                    Payment.status == PaymentStatus.OBSERVED.value,
                )
                .values(status=PaymentStatus.CONFIRMED.value, confirmed_at=confirmed_at)
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_finalized(
        self, chain_id: int, payment_reference: str, finalized_at: datetime
    ) -> bool:
        """observed/confirmed → finalized. Returns True only if the row changed."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Payment)
                .where(
                    Payment.chain_id == chain_id,
                    Payment.payment_reference == payment_reference,
                    Payment.status != PaymentStatus.FINALIZED.value,
                )
                .values(status=PaymentStatus.FINALIZED.value, finalized_at=finalized_at)
            )
            await session.commit()
        return result.rowcount > 0

    async def get_payment(self, chain_id: int, payment_reference: str) -> PaymentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Payment, (chain_id, payment_reference))
        return PaymentRecord.from_model(row) if row is not None else None

    async def get_transfers(self, chain_id: int, payment_reference: str) -> list[TransferRecord]:
        """Transfers for a reference in (block, tx index, log index) order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransfer)
                .where(
                    PaymentTransfer.chain_id == chain_id,
                    PaymentTransfer.payment_reference == payment_reference,
                )
                .order_by(
                    PaymentTransfer.block_number,
                    PaymentTransfer.transaction_index,
                    PaymentTransfer.log_index,
                )
            )
            return [TransferRecord.from_model(m) for m in result.scalars().all()]

    async def confirm_candidates(self, chain_id: int, max_first_block: int) -> list[str]:
        """References still observed whose first transfer is at or below max_first_block."""
        return await self._candidates(
            chain_id,
            max_first_block,
            Payment.status.not_in([PaymentStatus.CONFIRMED.value, PaymentStatus.FINALIZED.value]),
        )

    async def finalize_candidates(self, chain_id: int, max_first_block: int) -> list[str]:
        """Non-finalized references whose first transfer is at or below max_first_block."""
        return await self._candidates(
            chain_id,
            max_first_block,
            Payment.status != PaymentStatus.FINALIZED.value,
        )

    async def _candidates(
        self, chain_id: int, max_first_block: int, status_clause: ColumnElement[bool]
    ) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Payment.payment_reference)
                .where(
                    Payment.chain_id == chain_id,
                    status_clause,
                    Payment.first_block_number.is_not(None),
                    Payment.first_block_number <= max_first_block,
                )
                .order_by(Payment.first_block_number.asc(), Payment.payment_reference.asc())
            )
            return list(result.scalars().all())

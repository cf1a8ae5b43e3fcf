"""Per-chain ingestion cursor persisted in payments_cursors.

The cursor is the (block, transaction index, log index) of the last
PaymentReceived log that was fully processed. It only moves forward.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from chainpay.connectors.query_filter import lexicographic_greater
from chainpay.utils.db import PaymentCursor, upsert_for
from chainpay.utils.logger import get_logger

logger = get_logger("cursor_store")


@dataclass(frozen=True, order=True)
class Cursor:
    """Position of a log under lexicographic (block, tx index, log index) order."""

    block_number: int
    transaction_index: int
    log_index: int

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.block_number, self.transaction_index, self.log_index)


GENESIS = Cursor(-1, -1, -1)


class CursorStore:
    """Load and advance the cursor for one chain."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], chain_id: int) -> None:
        self._session_factory = session_factory
        self._chain_id = chain_id

    async def load(self) -> Cursor:
        """Return the stored cursor, or GENESIS when none exists yet."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentCursor).where(PaymentCursor.chain_id == self._chain_id)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return GENESIS
        return Cursor(row.last_block_number, row.last_transaction_index, row.last_log_index)

    async def save(self, cursor: Cursor) -> bool:
        """Persist cursor if it is not behind the stored one.

        Returns:
            True if the row was written, False if the write would have
            moved the cursor backwards and was ignored.
        """
        async with self._session_factory() as session:
            stmt = upsert_for(session, PaymentCursor).values(
                chain_id=self._chain_id,
                last_block_number=cursor.block_number,
                last_transaction_index=cursor.transaction_index,
                last_log_index=cursor.log_index,
            )
            ex = stmt.excluded
            cur = PaymentCursor.__table__.c
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain_id"],
                set_={
                    "last_block_number": ex.last_block_number,
                    "last_transaction_index": ex.last_transaction_index,
                    "last_log_index": ex.last_log_index,
                },
                where=lexicographic_greater(
                    (ex.last_block_number, ex.last_transaction_index, ex.last_log_index),
                    (cur.last_block_number, cur.last_transaction_index, cur.last_log_index),
                    eq=operator.eq,
                    gt=operator.gt,
                    all_=and_,
                    any_=or_,
                    or_equal=True,
                ),
            )
            result = await session.execute(stmt)
            await session.commit()

        written = result.rowcount > 0
        if written:
            logger.debug("cursor_saved", chain_id=self._chain_id, cursor=cursor.as_tuple())
        else:
            logger.warning("cursor_regression_ignored", chain_id=self._chain_id, cursor=cursor.as_tuple())
        return written

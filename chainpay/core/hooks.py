"""Order lifecycle hooks and their fire-and-forget dispatcher.

Hooks run in background tasks, never awaited by the poll loop. At most
``concurrency`` dispatches execute at once; the rest wait on a
semaphore. Every dispatch catches and logs its own exceptions.

No dedupe token is passed: a hook may see the same transition twice
if a dispatch is repeated, so consumers must be idempotent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime  # noqa: TC003
from typing import Protocol

from chainpay.utils.logger import get_logger

logger = get_logger("hooks")

PAYMENT_PROCESSING = "https://aboutcircles.com/status/PaymentProcessing"
PAYMENT_COMPLETE = "https://schema.org/PaymentComplete"

# (hook name, call) pairs run in order inside one dispatch task
HookStep = tuple[str, Callable[[], Awaitable[None]]]


class LifecycleHooks(Protocol):
    """Side effects after a genuine order transition."""

    async def on_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        paid_at: datetime,
    ) -> None: ...

    async def on_confirmed(self, payment_reference: str, confirmed_at: datetime) -> None: ...

    async def on_finalized(self, payment_reference: str, finalized_at: datetime) -> None: ...

    async def on_status_changed(
        self,
        order_key: str,
        old_status: str | None,
        new_status: str,
        changed_at: datetime,
    ) -> None: ...


class NoopLifecycleHooks:
    """Hooks that do nothing. Default when no consumer is wired."""

    async def on_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        paid_at: datetime,
    ) -> None:
        return None

    async def on_confirmed(self, payment_reference: str, confirmed_at: datetime) -> None:
        return None

    async def on_finalized(self, payment_reference: str, finalized_at: datetime) -> None:
        return None

    async def on_status_changed(
        self,
        order_key: str,
        old_status: str | None,
        new_status: str,
        changed_at: datetime,
    ) -> None:
        return None


class HookDispatcher:
    """Schedules hook calls as detached, bounded, exception-isolated tasks.

    Args:
        hooks: Hook implementation.
        concurrency: Max dispatches running at once.
    """

    def __init__(self, hooks: LifecycleHooks, concurrency: int = 8) -> None:
        self._hooks = hooks
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def dispatch_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        paid_at: datetime,
    ) -> None:
        """on_paid, then on_status_changed(None → PaymentProcessing)."""
        self._spawn(
            "paid",
            payment_reference,
            ("on_paid", lambda: self._hooks.on_paid(payment_reference, chain_id, tx_hash, log_index, paid_at)),
            (
                "on_status_changed",
                lambda: self._hooks.on_status_changed(payment_reference, None, PAYMENT_PROCESSING, paid_at),
            ),
        )

    def dispatch_confirmed(self, payment_reference: str, confirmed_at: datetime) -> None:
        self._spawn(
            "confirmed",
            payment_reference,
            ("on_confirmed", lambda: self._hooks.on_confirmed(payment_reference, confirmed_at)),
        )

    def dispatch_finalized(self, payment_reference: str, finalized_at: datetime) -> None:
        """on_finalized, then on_status_changed(PaymentProcessing → PaymentComplete)."""
        self._spawn(
            "finalized",
            payment_reference,
            ("on_finalized", lambda: self._hooks.on_finalized(payment_reference, finalized_at)),
            (
                "on_status_changed",
                lambda: self._hooks.on_status_changed(
                    payment_reference, PAYMENT_PROCESSING, PAYMENT_COMPLETE, finalized_at
                ),
            ),
        )

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _spawn(self, transition: str, payment_reference: str, *steps: HookStep) -> None:
        if self._closed:
            logger.warning("hook_dispatch_after_close", transition=transition, payment_reference=payment_reference)
            return
        task = asyncio.create_task(
            self._guarded(transition, payment_reference, steps),
            name=f"hook_{transition}_{payment_reference}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, transition: str, payment_reference: str, steps: tuple[HookStep, ...]) -> None:
        """Run the steps in order. A failing step is logged and does not skip the next one."""
        async with self._semaphore:
            for hook, call in steps:
                try:
                    await call()
                    logger.debug(
                        "hook_dispatched", transition=transition, hook=hook, payment_reference=payment_reference
                    )
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.error(
                        "hook_failed",
                        transition=transition,
                        hook=hook,
                        payment_reference=payment_reference,
                        exc_info=True,
                    )

    async def wait_idle(self, timeout: float | None = None) -> int:
        """Wait for dispatches in flight right now. Returns how many are still running."""
        if not self._tasks:
            return 0
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(still_pending)

    async def drain(self, timeout: float) -> int:
        """Stop accepting dispatches and wait up to timeout for in-flight ones.

        Returns:
            Number of tasks still running when the timeout expired. Those
            are left running, not cancelled.
        """
        self._closed = True
        still_pending = await self.wait_idle(timeout)
        if still_pending:
            logger.warning("hook_drain_incomplete", pending=still_pending)
        else:
            logger.info("hook_drain_complete")
        return still_pending

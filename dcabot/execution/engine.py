from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from dcabot.auth.session import AuthSession
from dcabot.broker.capability import BrokerError
from dcabot.clock import utc_now
from dcabot.errors import MarketClosedError, MarketStatusError, OrderPlacementError
from dcabot.execution.resolver import resolve_quantity
from dcabot.jobs.models import Job, OrderArgs, OrderCommand, OrderPassed, TransferCommand
from dcabot.monitoring.notifier import Notifier
from dcabot.storage.history import OrderHistory

LOGGER = logging.getLogger(__name__)


class ExecutionEngine:
    """
    Runs one command against an authenticated session.

    Market closed, unresolvable quantity and broker rejections abort before
    anything is recorded; the job's ``last_run`` only moves once the fill is
    in the history file.
    """

    def __init__(
        self,
        *,
        history: OrderHistory,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.history = history
        self.notifier = notifier
        self.clock = clock

    def execute(self, job: Job, session: AuthSession) -> OrderPassed:
        command = job.command
        if isinstance(command, TransferCommand):
            raise NotImplementedError(f"transfer commands cannot be executed yet (job {job.id})")
        if not isinstance(command, OrderCommand):
            raise TypeError(f"Unsupported command {type(command).__name__}")

        LOGGER.debug("Running job %s with last_run %d", job.id, job.last_run)
        order = self._place(command.order, session)
        job.mark_run(self.clock())
        LOGGER.debug("Updated job %s with last_run %d", job.id, job.last_run)
        self._notify(order)
        return order

    def submit_order(self, args: OrderArgs, session: AuthSession) -> OrderPassed:
        """One-off order outside any job."""
        order = self._place(args, session)
        self._notify(order)
        return order

    def _place(self, args: OrderArgs, session: AuthSession) -> OrderPassed:
        try:
            market_open = session.is_market_open(args.symbol)
        except BrokerError as exc:
            LOGGER.error("Error checking market status for %s: %s", args.symbol, exc)
            raise MarketStatusError(f"Error checking market status for {args.symbol}") from exc
        if not market_open:
            raise MarketClosedError(f"Market is closed for {args.symbol}")

        quantity = resolve_quantity(args, session.instrument_quote)

        try:
            fill = session.place_order(args.side, args.account, args.symbol, quantity)
        except BrokerError as exc:
            raise OrderPlacementError(f"Error while placing {args.side} order for {args.symbol}: {exc}") from exc
        if fill.fill_price is None:
            raise OrderPlacementError(f"Broker returned no fill price for order {fill.order_id} ({args.symbol})")

        order = OrderPassed(
            id=fill.order_id,
            price=fill.fill_price,
            args=args.model_copy(update={"quantity": quantity}),
        )
        self.history.append(order)
        return order

    def _notify(self, order: OrderPassed) -> None:
        self.notifier.order_passed(
            quantity=order.args.quantity or 0,
            symbol=order.args.symbol,
            side=order.args.side.value,
        )

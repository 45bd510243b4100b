from __future__ import annotations

import math
from collections.abc import Callable

from dcabot.broker.capability import BrokerError, Quote
from dcabot.errors import QuoteLookupError, ResolutionError
from dcabot.jobs.models import OrderArgs

QuoteLookup = Callable[[str], Quote]


def shares_for_amount(amount: float, last_price: float) -> int:
    """Whole shares affordable with ``amount``, never rounded up."""
    if last_price <= 0:
        raise QuoteLookupError(f"Invalid last price {last_price}")
    return int(math.floor(amount / last_price))


def resolve_quantity(args: OrderArgs, quote_lookup: QuoteLookup) -> int:
    if args.amount is not None:
        try:
            quote = quote_lookup(args.symbol)
        except BrokerError as exc:
            raise QuoteLookupError(f"Error while getting price for {args.symbol}: {exc}") from exc
        quantity = shares_for_amount(args.amount, quote.last_price)
        if quantity <= 0:
            raise ResolutionError(
                f"Amount {args.amount} buys no whole share of {args.symbol} at {quote.last_price}"
            )
        return quantity

    if args.quantity is not None:
        if args.quantity <= 0:
            raise ResolutionError(f"Quantity must be positive, got {args.quantity}")
        return args.quantity

    raise ResolutionError("neither quantity nor amount set")

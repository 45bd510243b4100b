from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from dcabot.jobs.models import Side


class BrokerError(RuntimeError):
    """Non-retryable broker error."""


class RetryableBrokerError(BrokerError):
    """Retryable API/network error."""


class BrokerAuthError(BrokerError):
    """Login, session or MFA rejected."""


class BrokerMfaRequired(BrokerAuthError):
    """The broker wants a one-time code before it accepts the session."""


class MfaType(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    WEBAUTHN = "webauthn"
    APP = "app"

    @classmethod
    def parse(cls, raw: str) -> "MfaType":
        try:
            return cls(str(raw).strip().lower())
        except ValueError as exc:
            raise BrokerError(f"Unknown MFA type '{raw}'") from exc


@dataclass(slots=True, frozen=True)
class MfaChallenge:
    otp_id: str
    token: str
    mfa_type: MfaType

    def to_json(self) -> dict[str, str]:
        return {"otp_id": self.otp_id, "token": self.token, "mfa_type": self.mfa_type.value}


@dataclass(slots=True, frozen=True)
class Quote:
    symbol: str
    last_price: float


@dataclass(slots=True, frozen=True)
class OrderFill:
    order_id: str
    fill_price: float | None


class BrokerCapability(Protocol):
    """
    What the core needs from a brokerage client.

    ``login`` and ``submit_mfa`` raise ``BrokerMfaRequired`` when a one-time
    code is needed, another ``BrokerError`` for any other failure.
    """

    def has_session(self) -> bool:
        ...

    def init_session(self) -> None:
        ...

    def login(self, client_id: str, password: str) -> None:
        ...

    def request_mfa(self) -> MfaChallenge:
        ...

    def submit_mfa(self, mfa_type: MfaType, otp_id: str, code: str, token: str) -> None:
        ...

    def is_market_open(self, symbol: str) -> bool:
        ...

    def instrument_quote(self, symbol: str) -> Quote:
        ...

    def place_order(self, side: Side, account: str, symbol: str, quantity: int) -> OrderFill:
        ...

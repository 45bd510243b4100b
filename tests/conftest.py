from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dcabot.auth.session import AuthSession
from dcabot.broker.capability import (
    BrokerAuthError,
    BrokerError,
    BrokerMfaRequired,
    MfaChallenge,
    MfaType,
    OrderFill,
    Quote,
)
from dcabot.execution.engine import ExecutionEngine
from dcabot.jobs.models import DailySchedule, Job, OrderArgs, OrderCommand, Schedule, Side
from dcabot.storage.history import OrderHistory
from dcabot.storage.job_store import JobStore


class FakeBroker:
    """Scripted broker capability."""

    def __init__(self) -> None:
        self.session_token: str | None = None
        self.password = "secret"
        self.login_requires_mfa = False
        self.mfa_types: list[MfaType] = [MfaType.SMS, MfaType.EMAIL, MfaType.SMS]
        self.submit_outcomes: list[str] = []
        self.market_open: dict[str, bool] = {}
        self.market_errors: set[str] = set()
        self.prices: dict[str, float] = {}
        self.fill_price: float | None = 25.0
        self.init_calls = 0
        self.login_calls = 0
        self.mfa_requests = 0
        self.submitted: list[tuple[MfaType, str, str, str]] = []
        self.orders: list[tuple[Side, str, str, int]] = []

    def has_session(self) -> bool:
        return self.session_token is not None

    def init_session(self) -> None:
        self.init_calls += 1
        self.session_token = f"token-{self.init_calls}"

    def login(self, client_id: str, password: str) -> None:
        self.login_calls += 1
        if password != self.password:
            raise BrokerAuthError("invalid credentials")
        if self.login_requires_mfa:
            raise BrokerMfaRequired("mfa required")

    def request_mfa(self) -> MfaChallenge:
        mfa_type = self.mfa_types[self.mfa_requests % len(self.mfa_types)]
        self.mfa_requests += 1
        return MfaChallenge(otp_id=f"otp-{self.mfa_requests}", token=f"tok-{self.mfa_requests}", mfa_type=mfa_type)

    def submit_mfa(self, mfa_type: MfaType, otp_id: str, code: str, token: str) -> None:
        self.submitted.append((mfa_type, otp_id, code, token))
        outcome = self.submit_outcomes.pop(0) if self.submit_outcomes else "ok"
        if outcome == "mfa":
            raise BrokerMfaRequired("mfa required")
        if outcome == "fail":
            raise BrokerAuthError("wrong code")

    def is_market_open(self, symbol: str) -> bool:
        if symbol in self.market_errors:
            raise BrokerError(f"status unavailable for {symbol}")
        return self.market_open.get(symbol, True)

    def instrument_quote(self, symbol: str) -> Quote:
        if symbol not in self.prices:
            raise BrokerError(f"no quote for {symbol}")
        return Quote(symbol=symbol, last_price=self.prices[symbol])

    def place_order(self, side: Side, account: str, symbol: str, quantity: int) -> OrderFill:
        self.orders.append((side, account, symbol, quantity))
        return OrderFill(order_id=f"ORD-{len(self.orders)}", fill_price=self.fill_price)


class BrokerFactory:
    def __init__(self) -> None:
        self.created: list[FakeBroker] = []

    def __call__(self) -> FakeBroker:
        broker = FakeBroker()
        self.created.append(broker)
        return broker


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[int, str, str]] = []

    def order_passed(self, *, quantity: int, symbol: str, side: str) -> None:
        self.messages.append((quantity, symbol, side))


def order_job(
    symbol: str = "FR0011871128",
    *,
    quantity: int | None = 2,
    amount: float | None = None,
    schedule: Schedule | None = None,
    last_run: datetime | None = None,
) -> Job:
    job = Job.create(
        schedule or DailySchedule(),
        OrderCommand(order=OrderArgs(account="acc-1", symbol=symbol, quantity=quantity, amount=amount, side="buy")),
        now=last_run or datetime(2025, 2, 1, 9, 0, tzinfo=timezone.utc),
    )
    return job


@pytest.fixture
def broker_factory() -> BrokerFactory:
    return BrokerFactory()


@pytest.fixture
def session(broker_factory: BrokerFactory) -> AuthSession:
    auth = AuthSession(broker_factory)
    auth.login("client-1", "secret")
    return auth


@pytest.fixture
def broker(session: AuthSession) -> FakeBroker:
    return session.client


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def history(tmp_path) -> OrderHistory:
    return OrderHistory(tmp_path / "history.json")


@pytest.fixture
def job_store(tmp_path) -> JobStore:
    return JobStore(tmp_path / "jobs.json")


@pytest.fixture
def engine(history: OrderHistory, notifier: RecordingNotifier) -> ExecutionEngine:
    return ExecutionEngine(
        history=history,
        notifier=notifier,
        clock=lambda: datetime(2025, 2, 3, 10, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def make_job():
    return order_job

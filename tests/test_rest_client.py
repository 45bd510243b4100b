from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from dcabot.broker.capability import BrokerAuthError, BrokerError, BrokerMfaRequired, MfaType, RetryableBrokerError
from dcabot.broker.rest_client import RequestThrottle, RestBrokerClient, _is_disconnect, _retry_after_seconds
from dcabot.jobs.models import Side


class FakeResponse:
    def __init__(self, status_code: int, payload: object = None, headers: dict[str, str] | None = None):
        self.status_code = status_code
        self.text = "" if payload is None else json.dumps(payload)
        self.headers = headers or {}

    def json(self) -> object:
        return json.loads(self.text)


class FakeHttpSession:
    def __init__(self, responses: list[FakeResponse | Exception]):
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.calls: list[dict] = []

    def request(self, **kwargs) -> FakeResponse:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses: list[FakeResponse | Exception], **kwargs) -> tuple[RestBrokerClient, FakeHttpSession]:
    http = FakeHttpSession(responses)
    client = RestBrokerClient(
        "http://gateway.test/api/",
        api_key="key-1",
        rate_limit_rps=1000,
        rate_limit_burst=100,
        http_session=http,
        **kwargs,
    )
    return client, http


@pytest.fixture
def no_sleep(monkeypatch) -> None:
    monkeypatch.setattr("dcabot.broker.rest_client.time.sleep", lambda seconds: None)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


def test_throttle_allows_burst_then_spaces_calls() -> None:
    clock = FakeClock()
    throttle = RequestThrottle(rate_per_second=5.0, burst=2, clock=clock, sleep=clock.sleep)
    assert throttle.wait() == 0.0
    assert throttle.wait() == 0.0
    assert throttle.wait() == pytest.approx(0.2)
    clock.now += 0.1
    assert throttle.wait() == pytest.approx(0.1)
    assert clock.slept == [pytest.approx(0.2), pytest.approx(0.1)]


def test_throttle_refills_up_to_burst_only() -> None:
    clock = FakeClock()
    throttle = RequestThrottle(rate_per_second=1.0, burst=2, clock=clock, sleep=clock.sleep)
    throttle.wait()
    throttle.wait()
    clock.now += 60
    assert [throttle.wait() for _ in range(3)] == [0.0, 0.0, pytest.approx(1.0)]


def test_retry_after_delta_seconds() -> None:
    assert _retry_after_seconds({"Retry-After": "3"}) == 3.0
    assert _retry_after_seconds({"Retry-After": "-1"}) is None
    assert _retry_after_seconds({}) is None


def test_retry_after_http_date() -> None:
    now = datetime(2025, 2, 3, 10, 0, 0, tzinfo=timezone.utc)
    headers = {"Retry-After": "Mon, 03 Feb 2025 10:00:30 GMT"}
    assert _retry_after_seconds(headers, now) == 30.0
    assert _retry_after_seconds({"Retry-After": "Mon, 03 Feb 2025 09:00:00 GMT"}, now) == 0.0
    assert _retry_after_seconds({"Retry-After": "not-a-date"}, now) is None


def test_disconnect_detection_only_for_connection_errors() -> None:
    assert _is_disconnect(requests.ConnectionError("Connection aborted: remote end closed connection"))
    assert not _is_disconnect(requests.ConnectionError("Name or service not known"))
    assert not _is_disconnect(requests.Timeout("connection reset while reading"))


def test_session_token_is_sent_after_init() -> None:
    client, http = _client([FakeResponse(200, {"sessionToken": "abc"}), FakeResponse(200, {"open": True})])
    client.init_session()
    assert client.has_session()
    assert client.is_market_open("FR0011871128") is True

    second = http.calls[1]
    assert second["url"] == "http://gateway.test/api/markets/FR0011871128/status"
    assert second["headers"] == {"X-API-KEY": "key-1", "X-SESSION-TOKEN": "abc"}
    assert second["timeout"] == 15


def test_login_mfa_code_maps_to_mfa_required() -> None:
    client, _ = _client([FakeResponse(401, {"errorCode": "mfa.required"})])
    with pytest.raises(BrokerMfaRequired):
        client.login("client-1", "secret")


def test_plain_401_is_an_auth_error() -> None:
    client, _ = _client([FakeResponse(401, {"errorCode": "credentials.invalid"})])
    with pytest.raises(BrokerAuthError) as excinfo:
        client.login("client-1", "wrong")
    assert not isinstance(excinfo.value, BrokerMfaRequired)


def test_request_mfa_parses_challenge() -> None:
    client, _ = _client([FakeResponse(200, {"otpId": "o-1", "token": "t-1", "mfaType": "EMAIL"})])
    challenge = client.request_mfa()
    assert challenge.otp_id == "o-1"
    assert challenge.mfa_type is MfaType.EMAIL


def test_429_is_retried_then_succeeds(no_sleep) -> None:
    client, http = _client(
        [
            FakeResponse(429, headers={"Retry-After": "1"}),
            FakeResponse(200, {"last": "25.5"}),
        ]
    )
    assert client.instrument_quote("FR0011871128").last_price == 25.5
    assert len(http.calls) == 2
    metrics = client.metrics_snapshot()
    assert metrics["http_429_count"] == 1
    assert metrics["total_retries"] == 1


def test_network_errors_exhaust_attempts(no_sleep) -> None:
    error = requests.ConnectionError("Connection aborted: remote end closed connection")
    client, http = _client([error, error], request_max_attempts=2)
    with pytest.raises(RetryableBrokerError):
        client.is_market_open("FR0011871128")
    assert len(http.calls) == 2
    assert client.metrics_snapshot()["network_disconnects"] == 2


def test_client_error_is_not_retried() -> None:
    client, http = _client([FakeResponse(400, {"message": "bad symbol"})])
    with pytest.raises(BrokerError):
        client.is_market_open("???")
    assert len(http.calls) == 1


def test_place_order_payload_and_fill() -> None:
    client, http = _client([FakeResponse(200, {"orderId": "ORD-9", "price": 101.25})])
    fill = client.place_order(Side.SELL, "acc-1", "FR0011871128", 3)
    assert fill.order_id == "ORD-9"
    assert fill.fill_price == 101.25
    assert http.calls[0]["url"] == "http://gateway.test/api/accounts/acc-1/orders"
    assert http.calls[0]["json"] == {"side": "SELL", "symbol": "FR0011871128", "quantity": 3, "orderType": "MARKET"}


def test_place_order_without_price_has_no_fill_price() -> None:
    client, _ = _client([FakeResponse(200, {"orderId": "ORD-9"})])
    assert client.place_order(Side.BUY, "acc-1", "S", 1).fill_price is None

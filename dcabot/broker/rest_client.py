from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import requests

from dcabot.broker.capability import (
    BrokerAuthError,
    BrokerError,
    BrokerMfaRequired,
    MfaChallenge,
    MfaType,
    OrderFill,
    Quote,
    RetryableBrokerError,
)
from dcabot.clock import utc_now
from dcabot.jobs.models import Side

LOGGER = logging.getLogger(__name__)

MFA_REQUIRED_CODE = "mfa.required"
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass(slots=True)
class BrokerClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_disconnects: int = 0
    auth_failures: int = 0


class RequestThrottle:
    """
    Token bucket in front of the gateway: ``burst`` calls may go back to back,
    after that calls are spaced ``1 / rate_per_second`` apart on average.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = 1.0 / max(0.1, float(rate_per_second))
        self.burst = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._available = float(self.burst)
        self._stamp = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._stamp)
        self._stamp = now
        self._available = min(float(self.burst), self._available + elapsed / self.interval)

    def wait(self) -> float:
        """Block until one call is allowed; returns the seconds slept."""
        with self._lock:
            self._refill()
            delay = 0.0
            if self._available < 1.0:
                delay = (1.0 - self._available) * self.interval
                self._sleep(delay)
                # The slept time paid for exactly this call.
                self._stamp = self._clock()
                self._available = 1.0
            self._available -= 1.0
            return delay


_DISCONNECT_MARKERS = (
    "remote end closed",
    "remotedisconnected",
    "connection aborted",
    "connection reset",
)


def _is_disconnect(exc: requests.RequestException) -> bool:
    if not isinstance(exc, requests.ConnectionError):
        return False
    text = f"{type(exc).__name__} {exc}".lower()
    return any(marker in text for marker in _DISCONNECT_MARKERS)


def _retry_after_seconds(headers: Any, now: datetime | None = None) -> float | None:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date."""
    raw = str(headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - (now or utc_now())).total_seconds())
    return seconds if seconds >= 0 else None


def _extract_error_code(response: requests.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error_code = payload.get("errorCode")
    return str(error_code) if error_code else None


class RestBrokerClient:
    """
    Brokerage client for a JSON REST gateway.

    Auth flow:
    - POST /session creates an anonymous session, token read from ``sessionToken``.
    - POST /session/login with clientId/password. HTTP 401 with
      ``errorCode == "mfa.required"`` means a one-time code is needed.
    - POST /session/mfa asks for a challenge, POST /session/mfa/verify answers it.

    Every call carries ``timeout_seconds`` so a hung gateway cannot block a
    batch forever.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 15,
        *,
        rate_limit_rps: float = 2.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 20.0,
        http_session: requests.Session | None = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = http_session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        self.session_token: str | None = None
        self._throttle = RequestThrottle(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = BrokerClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        if self.session_token:
            headers["X-SESSION-TOKEN"] = self.session_token
        return headers

    def _backoff_seconds(self, attempt: int) -> float:
        # base * 2^(attempt-1), plus up to 20% jitter, capped at backoff_max_seconds
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** max(0, attempt - 1))
        return min(self.backoff_max_seconds, delay + random.uniform(0.0, max(0.01, delay * 0.2)))

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        delay = retry_after if retry_after is not None else self._backoff_seconds(attempt)
        self._metric_add("total_retries")
        LOGGER.warning(
            "Broker call %s failed (%s), retry %d/%d in %.2fs",
            endpoint,
            reason,
            attempt,
            self.request_max_attempts - 1,
            delay,
        )
        time.sleep(delay)

    def _send_http(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._throttle.wait()
        self._metric_add("total_requests")
        return self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            params=params,
            json=json_payload,
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send_http(method=method, path=path, params=params, json_payload=json)
            except requests.RequestException as exc:
                if _is_disconnect(exc):
                    self._metric_add("network_disconnects")
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            status = response.status_code
            if status in (401, 403):
                self._metric_add("auth_failures")
                if _extract_error_code(response) == MFA_REQUIRED_CODE:
                    raise BrokerMfaRequired(f"MFA required for {method} {path}")
                raise BrokerAuthError(f"Authorization failed {method} {path}: HTTP {status} {response.text}")

            if status in RETRYABLE_STATUS:
                retry_after = None
                if status == 429:
                    self._metric_add("http_429_count")
                    retry_after = _retry_after_seconds(response.headers)
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerError(f"Retryable API error {method} {path}: HTTP {status} {response.text}")
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{status}", retry_after=retry_after)
                continue

            if status >= 400:
                raise BrokerError(f"API error {method} {path}: HTTP {status} {response.text}")

            if not response.text:
                return {}
            payload = response.json()
            return payload if isinstance(payload, dict) else {"data": payload}

        raise RetryableBrokerError(f"Could not complete request {method} {path}")

    def has_session(self) -> bool:
        return bool(self.session_token)

    def init_session(self) -> None:
        payload = self._request("POST", "/session")
        token = payload.get("sessionToken")
        if not token:
            raise BrokerError("Session token missing in /session response")
        self.session_token = str(token)

    def login(self, client_id: str, password: str) -> None:
        self._request("POST", "/session/login", json={"clientId": client_id, "password": password})

    def request_mfa(self) -> MfaChallenge:
        payload = self._request("POST", "/session/mfa")
        try:
            return MfaChallenge(
                otp_id=str(payload["otpId"]),
                token=str(payload["token"]),
                mfa_type=MfaType.parse(payload["mfaType"]),
            )
        except KeyError as exc:
            raise BrokerError(f"Incomplete MFA challenge payload: missing {exc}") from exc

    def submit_mfa(self, mfa_type: MfaType, otp_id: str, code: str, token: str) -> None:
        self._request(
            "POST",
            "/session/mfa/verify",
            json={"mfaType": mfa_type.value, "otpId": otp_id, "code": code, "token": token},
        )

    def is_market_open(self, symbol: str) -> bool:
        payload = self._request("GET", f"/markets/{symbol}/status")
        if "open" not in payload:
            raise BrokerError(f"Missing 'open' in market status for {symbol}")
        return bool(payload["open"])

    def instrument_quote(self, symbol: str) -> Quote:
        payload = self._request("GET", f"/quotes/{symbol}")
        last = payload.get("last")
        if last is None:
            raise BrokerError(f"Missing last price in quote for {symbol}")
        return Quote(symbol=symbol, last_price=float(last))

    def place_order(self, side: Side, account: str, symbol: str, quantity: int) -> OrderFill:
        payload = self._request(
            "POST",
            f"/accounts/{account}/orders",
            json={
                "side": side.value.upper(),
                "symbol": symbol,
                "quantity": int(quantity),
                "orderType": "MARKET",
            },
        )
        order_id = payload.get("orderId")
        if not order_id:
            raise BrokerError(f"Order response for {symbol} has no orderId")
        price = payload.get("price")
        return OrderFill(order_id=str(order_id), fill_price=float(price) if price is not None else None)

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum

from dcabot.broker.capability import (
    BrokerCapability,
    BrokerError,
    BrokerMfaRequired,
    MfaChallenge,
    MfaType,
    OrderFill,
    Quote,
)
from dcabot.errors import AuthenticationError, MfaRequiredError
from dcabot.jobs.models import Side

LOGGER = logging.getLogger(__name__)


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    SESSION_INITIALIZED = "session_initialized"
    MFA_PENDING = "mfa_pending"
    AUTHENTICATED = "authenticated"


class AuthSession:
    """
    Login/MFA state machine around a single broker client.

    The session is resumable: each ``login``/``submit_mfa`` call is one UI
    round-trip and may just add one more pending challenge. Callers read
    ``state`` and ``pending_challenges`` between calls.

    All broker traffic (auth, quotes, orders) goes through ``self.lock`` so
    only one operation uses the client at a time.
    """

    def __init__(self, client_factory: Callable[[], BrokerCapability]):
        self._client_factory = client_factory
        self.client: BrokerCapability = client_factory()
        self.lock = threading.RLock()
        self._state = AuthState.ANONYMOUS
        self._challenges: list[MfaChallenge] = []
        self._credentials: tuple[str, str] | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is AuthState.AUTHENTICATED

    @property
    def pending_challenges(self) -> list[MfaChallenge]:
        with self.lock:
            return list(self._challenges)

    def init_session(self) -> None:
        with self.lock:
            if self.client.has_session():
                if self._state is AuthState.ANONYMOUS:
                    self._state = AuthState.SESSION_INITIALIZED
                return
            try:
                self.client.init_session()
            except BrokerError as exc:
                raise AuthenticationError(f"error while init session: {exc}") from exc
            self._state = AuthState.SESSION_INITIALIZED
            LOGGER.debug("Broker session initialized")

    def login(self, client_id: str, password: str) -> None:
        with self.lock:
            if self._state is AuthState.AUTHENTICATED:
                return
            self._credentials = (client_id, password)
            self._login_locked(client_id, password)

    def submit_mfa(self, challenge: MfaChallenge, code: str) -> None:
        with self.lock:
            try:
                self.client.submit_mfa(challenge.mfa_type, challenge.otp_id, code, challenge.token)
            except BrokerMfaRequired as exc:
                if self._sms_and_email_passed():
                    # Passing both an SMS and an email challenge clears the
                    # restriction, a fresh session logs in without another code.
                    LOGGER.info("SMS and email MFA passed, restarting broker session")
                    self._restart_session()
                    return
                raise self._challenge_required() from exc
            except BrokerError as exc:
                raise AuthenticationError(f"error while submitting mfa: {exc}") from exc
            self._mark_authenticated()

    def reset(self) -> None:
        with self.lock:
            self.client = self._client_factory()
            self._state = AuthState.ANONYMOUS
            self._challenges.clear()

    def is_market_open(self, symbol: str) -> bool:
        with self._authenticated_client() as client:
            return client.is_market_open(symbol)

    def instrument_quote(self, symbol: str) -> Quote:
        with self._authenticated_client() as client:
            return client.instrument_quote(symbol)

    def place_order(self, side: Side, account: str, symbol: str, quantity: int) -> OrderFill:
        with self._authenticated_client() as client:
            return client.place_order(side, account, symbol, quantity)

    @contextmanager
    def _authenticated_client(self) -> Iterator[BrokerCapability]:
        with self.lock:
            if self._state is not AuthState.AUTHENTICATED:
                raise AuthenticationError(f"broker session is not authenticated (state={self._state.value})")
            yield self.client

    def _login_locked(self, client_id: str, password: str) -> None:
        self.init_session()
        try:
            self.client.login(client_id, password)
        except BrokerMfaRequired as exc:
            raise self._challenge_required() from exc
        except BrokerError as exc:
            raise AuthenticationError(f"error while login: {exc}") from exc
        self._mark_authenticated()

    def _restart_session(self) -> None:
        if self._credentials is None:
            raise AuthenticationError("cannot restart broker session without a previous login")
        self.reset()
        self._login_locked(*self._credentials)

    def _challenge_required(self) -> MfaRequiredError:
        try:
            challenge = self.client.request_mfa()
        except BrokerError as exc:
            raise AuthenticationError(f"error while requesting mfa: {exc}") from exc
        self._challenges.append(challenge)
        self._state = AuthState.MFA_PENDING
        LOGGER.info("MFA required, challenge %s sent by %s", challenge.otp_id, challenge.mfa_type.value)
        return MfaRequiredError(challenge)

    def _sms_and_email_passed(self) -> bool:
        types = {challenge.mfa_type for challenge in self._challenges}
        return len(self._challenges) >= 2 and MfaType.SMS in types and MfaType.EMAIL in types

    def _mark_authenticated(self) -> None:
        self._state = AuthState.AUTHENTICATED
        self._challenges.clear()
        LOGGER.info("Broker session authenticated")

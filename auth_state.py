"""Client-side auth/session state machine.

One ``AuthStateMachine`` tracks a single client: who is signed in, whether
the account is whitelisted and whether the session came from a password
recovery link. The initial bootstrap and the live session subscription can
fire in either order; both go through ``_apply_session`` so the whitelist is
resolved the same way on every path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth import (
    AuthError,
    AuthEvent,
    AuthUser,
    LocalAuthClient,
    SessionTokens,
    Subscription,
)
from models import AuthSessionKind
from schemas import validate_new_password
from whitelist import WhitelistService


logger = logging.getLogger(__name__)

RECOVERY_PARAMS = ("access_token", "refresh_token", "type")


class AuthState(str, Enum):
    unauthenticated = "unauthenticated"
    authenticating = "authenticating"
    unverified = "unverified"
    whitelisted = "whitelisted"
    not_whitelisted = "not_whitelisted"
    password_recovery = "password_recovery"


@dataclass(frozen=True)
class AuthResult:
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Location:
    """The client's visible URL; ``replace`` rewrites it without navigating."""

    def __init__(self, href: str) -> None:
        self.href = href

    def replace(self, href: str) -> None:
        self.href = href


def recovery_tokens(href: str) -> Optional[dict[str, str]]:
    """Recovery parameters from the URL fragment, or failing that the query string."""
    parts = urlsplit(href)
    for raw in (parts.fragment, parts.query):
        params = dict(parse_qsl(raw))
        if (
            params.get("access_token")
            and params.get("refresh_token")
            and params.get("type") == "recovery"
        ):
            return params
    return None


def scrub_recovery_params(href: str) -> str:
    parts = urlsplit(href)
    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query) if k not in RECOVERY_PARAMS]
    )
    fragment = parts.fragment
    fragment_params = parse_qsl(fragment)
    if any(k in RECOVERY_PARAMS for k, _ in fragment_params):
        fragment = urlencode(
            [(k, v) for k, v in fragment_params if k not in RECOVERY_PARAMS]
        )
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, fragment))


class AuthStateMachine:
    def __init__(
        self,
        auth: LocalAuthClient,
        whitelist: WhitelistService,
        *,
        site_url: Optional[str] = None,
    ) -> None:
        self.auth = auth
        self.whitelist = whitelist
        self.site_url = (site_url or auth.settings.site_url).rstrip("/")
        self.user: Optional[AuthUser] = None
        self.session: Optional[SessionTokens] = None
        self.is_loading = True
        self.is_whitelisted = False
        self.is_password_recovery = False
        self.recovery_error: Optional[str] = None
        self._whitelist_pending = False
        self._generation = 0
        self._subscription: Optional[Subscription] = None

    @property
    def state(self) -> AuthState:
        if self.is_password_recovery and self.user is not None:
            return AuthState.password_recovery
        if self.user is None:
            return AuthState.authenticating if self.is_loading else AuthState.unauthenticated
        if self._whitelist_pending:
            return AuthState.unverified
        if self.is_whitelisted:
            return AuthState.whitelisted
        return AuthState.not_whitelisted

    def snapshot(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "user": (
                {"id": self.user.id, "email": self.user.email} if self.user else None
            ),
            "is_loading": self.is_loading,
            "is_whitelisted": self.is_whitelisted,
            "is_password_recovery": self.is_password_recovery,
            "recovery_error": self.recovery_error,
        }

    # lifecycle

    async def start(self, location: Location) -> None:
        if self._subscription is None:
            self._subscription = self.auth.on_auth_state_change(self._on_auth_change)
        await self.bootstrap(location)

    def _require_started(self) -> None:
        if self._subscription is None:
            raise RuntimeError("AuthStateMachine.start() must be awaited first")

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def bootstrap(self, location: Location) -> None:
        await self.consume_recovery_tokens(location)
        tokens = await self.auth.get_session()
        await self._apply_session(AuthEvent.initial_session, tokens)
        self.is_loading = False

    async def consume_recovery_tokens(self, location: Location) -> bool:
        """Adopt a recovery session from the URL once, then scrub the tokens from it."""
        params = recovery_tokens(location.href)
        if params is None:
            return False
        try:
            await self.auth.set_session(params["access_token"], params["refresh_token"])
        except AuthError as exc:
            logger.warning(f"auth_recovery_link_rejected: error={exc}")
            self.recovery_error = str(exc)
            return False
        location.replace(scrub_recovery_params(location.href))
        self.recovery_error = None
        self.is_password_recovery = True
        return True

    async def _on_auth_change(
        self, event: AuthEvent, tokens: Optional[SessionTokens]
    ) -> None:
        await self._apply_session(event, tokens)
        self.is_loading = False

    async def _apply_session(
        self, event: AuthEvent, tokens: Optional[SessionTokens]
    ) -> None:
        self._generation += 1
        generation = self._generation
        self.session = tokens
        self.user = tokens.user if tokens else None

        if event == AuthEvent.signed_out or tokens is None:
            self.is_password_recovery = False
            self.is_whitelisted = False
            self._whitelist_pending = False
            return
        if event == AuthEvent.password_recovery or tokens.kind == AuthSessionKind.recovery:
            self.is_password_recovery = True

        self._whitelist_pending = True
        allowed = await self._resolve_whitelist(tokens.user)
        if generation != self._generation:
            # a newer session change owns the flags now
            return
        self.is_whitelisted = allowed
        self._whitelist_pending = False

    async def _resolve_whitelist(self, user: AuthUser) -> bool:
        try:
            await self.whitelist.ensure_whitelisted(user)
        except Exception as exc:
            logger.warning(f"whitelist_provision_failed: user={user.id} error={exc}")
        return await self.whitelist.is_whitelisted(user.id)

    # operations

    async def sign_in(self, email: str, password: str) -> AuthResult:
        self._require_started()
        try:
            await self.auth.sign_in_with_password(email, password)
        except AuthError as exc:
            return AuthResult(error=str(exc))
        return AuthResult()

    async def sign_up(self, email: str, password: str) -> AuthResult:
        self._require_started()
        try:
            await self.auth.sign_up(email, password, redirect_to=f"{self.site_url}/")
        except AuthError as exc:
            return AuthResult(error=str(exc))
        return AuthResult()

    async def confirm_email(self, token: str) -> AuthResult:
        self._require_started()
        try:
            await self.auth.confirm_email(token)
        except AuthError as exc:
            return AuthResult(error=str(exc))
        return AuthResult()

    async def reset_password(self, email: str) -> AuthResult:
        self._require_started()
        try:
            await self.auth.reset_password_for_email(
                email, redirect_to=f"{self.site_url}/reset-password"
            )
        except AuthError as exc:
            return AuthResult(error=str(exc))
        return AuthResult()

    async def update_password(
        self, password: str, confirmation: Optional[str] = None
    ) -> AuthResult:
        self._require_started()
        problem = validate_new_password(
            password,
            confirmation,
            min_length=self.auth.settings.min_password_length,
        )
        if problem:
            return AuthResult(error=problem)
        if self.session is None:
            return AuthResult(
                error="No active reset session. Open the link from the email again."
            )
        try:
            await self.auth.update_user(password)
        except AuthError as exc:
            return AuthResult(error=str(exc))
        self.is_password_recovery = False
        return AuthResult()

    async def sign_out(self) -> None:
        self._require_started()
        try:
            await self.auth.sign_out()
        except AuthError as exc:
            logger.warning(f"auth_sign_out_failed: error={exc}")
        self._generation += 1
        self.user = None
        self.session = None
        self.is_whitelisted = False
        self._whitelist_pending = False
        self.is_password_recovery = False

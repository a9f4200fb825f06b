from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, MutableMapping, Optional
from urllib.parse import urlencode

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool
from werkzeug.security import check_password_hash, generate_password_hash

from config import Settings, get_settings
from models import AuthSession, AuthSessionKind, User, utcnow


logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

STORAGE_ACCESS_TOKEN = "access_token"
STORAGE_REFRESH_TOKEN = "refresh_token"


class AuthError(Exception):
    """An auth call failed; ``str(exc)`` is safe to show to the user."""


class AuthEvent(str, Enum):
    initial_session = "INITIAL_SESSION"
    signed_in = "SIGNED_IN"
    signed_out = "SIGNED_OUT"
    password_recovery = "PASSWORD_RECOVERY"
    token_refreshed = "TOKEN_REFRESHED"
    user_updated = "USER_UPDATED"


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str
    email_confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: AuthUser
    kind: AuthSessionKind = AuthSessionKind.password


@dataclass(frozen=True)
class SignUpResult:
    user: AuthUser
    session: Optional[SessionTokens]


AuthListener = Callable[[AuthEvent, Optional[SessionTokens]], Awaitable[None]]
LinkSender = Callable[[str, str, str], None]


def log_link(kind: str, email: str, link: str) -> None:
    logger.info(f"auth_link: kind={kind} email={email} link={link}")


class Subscription:
    def __init__(self, client: "LocalAuthClient", listener: AuthListener) -> None:
        self._client = client
        self.listener = listener

    def unsubscribe(self) -> None:
        self._client._listeners = [
            s for s in self._client._listeners if s is not self
        ]


def _to_user(user: User) -> AuthUser:
    return AuthUser(
        id=user.id, email=user.email, email_confirmed_at=user.email_confirmed_at
    )


class LocalAuthClient:
    """Password auth backed by the application database.

    One instance plays the part of one browser's auth client: it holds the
    current session, mirrors it into ``storage`` so it survives a restart of
    the client, and notifies subscribers of session changes.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        *,
        storage: Optional[MutableMapping[str, str]] = None,
        send_link: LinkSender = log_link,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.storage: MutableMapping[str, str] = storage if storage is not None else {}
        self.send_link = send_link
        self._current: Optional[SessionTokens] = None
        self._listeners: list[Subscription] = []

    # tokens

    def _serializer(self, salt: str) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.settings.secret_key, salt=salt)

    def _access_ttl(self, kind: AuthSessionKind) -> int:
        if kind == AuthSessionKind.recovery:
            return self.settings.recovery_token_ttl_secs
        return self.settings.access_token_ttl_secs

    def _issue(self, db: Session, user: User, kind: AuthSessionKind) -> SessionTokens:
        now = utcnow()
        if kind == AuthSessionKind.recovery:
            expires_at = now + timedelta(seconds=self.settings.recovery_token_ttl_secs)
        else:
            expires_at = now + timedelta(days=self.settings.refresh_token_ttl_days)
        record = AuthSession(
            user_id=user.id,
            kind=kind,
            refresh_token=secrets.token_urlsafe(32),
            expires_at=expires_at,
        )
        db.add(record)
        db.flush()
        return self._tokens_for(record, user)

    def _tokens_for(self, record: AuthSession, user: User) -> SessionTokens:
        access_token = self._serializer("access-token").dumps(
            {"sub": user.id, "sid": record.id, "kind": record.kind.value}
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=record.refresh_token,
            expires_at=utcnow() + timedelta(seconds=self._access_ttl(record.kind)),
            user=_to_user(user),
            kind=record.kind,
        )

    def _live_record(self, db: Session, refresh_token: str) -> AuthSession:
        record = db.scalar(
            select(AuthSession).where(AuthSession.refresh_token == refresh_token)
        )
        if (
            record is None
            or record.revoked_at is not None
            or record.expires_at <= utcnow()
        ):
            raise AuthError("Auth session missing or expired")
        return record

    def _rotate(self, db: Session, record: AuthSession) -> SessionTokens:
        record.refresh_token = secrets.token_urlsafe(32)
        db.flush()
        return self._tokens_for(record, record.user)

    # client state

    def _persist(self, tokens: Optional[SessionTokens]) -> None:
        self._current = tokens
        if tokens is None:
            self.storage.pop(STORAGE_ACCESS_TOKEN, None)
            self.storage.pop(STORAGE_REFRESH_TOKEN, None)
            return
        self.storage[STORAGE_ACCESS_TOKEN] = tokens.access_token
        self.storage[STORAGE_REFRESH_TOKEN] = tokens.refresh_token

    async def _emit(self, event: AuthEvent, tokens: Optional[SessionTokens]) -> None:
        for subscription in list(self._listeners):
            await subscription.listener(event, tokens)

    def on_auth_state_change(self, listener: AuthListener) -> Subscription:
        subscription = Subscription(self, listener)
        self._listeners.append(subscription)
        return subscription

    # blocking work, run via run_in_threadpool

    def _password_sign_in(self, email: str, password: str) -> SessionTokens:
        with self.session_factory() as db:
            user = db.scalar(select(User).where(func.lower(User.email) == email))
            if user is None or not check_password_hash(user.password_hash, password):
                raise AuthError("Invalid login credentials")
            if self.settings.require_email_confirmation and not user.email_confirmed_at:
                raise AuthError("Email not confirmed")
            tokens = self._issue(db, user, AuthSessionKind.password)
            db.commit()
        return tokens

    def _register(
        self, email: str, password: str, redirect_to: str
    ) -> tuple[AuthUser, Optional[SessionTokens], Optional[str]]:
        with self.session_factory() as db:
            if db.scalar(select(User).where(func.lower(User.email) == email)):
                raise AuthError("User already registered")
            user = User(email=email, password_hash=generate_password_hash(password))
            if not self.settings.require_email_confirmation:
                user.email_confirmed_at = utcnow()
            db.add(user)
            db.flush()
            tokens: Optional[SessionTokens] = None
            link: Optional[str] = None
            if self.settings.require_email_confirmation:
                token = self._serializer("email-confirmation").dumps({"sub": user.id})
                link = f"{redirect_to}?{urlencode({'confirmation_token': token})}"
            else:
                tokens = self._issue(db, user, AuthSessionKind.password)
            auth_user = _to_user(user)
            db.commit()
        return auth_user, tokens, link

    def _mark_confirmed(self, user_id: Optional[str]) -> AuthUser:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise AuthError("User not found")
            if user.email_confirmed_at is None:
                user.email_confirmed_at = utcnow()
            auth_user = _to_user(user)
            db.commit()
        return auth_user

    def _issue_recovery(self, email: str) -> Optional[SessionTokens]:
        with self.session_factory() as db:
            user = db.scalar(select(User).where(func.lower(User.email) == email))
            if user is None:
                return None
            tokens = self._issue(db, user, AuthSessionKind.recovery)
            db.commit()
        return tokens

    def _adopt(self, claims: dict, refresh_token: str) -> SessionTokens:
        with self.session_factory() as db:
            record = self._live_record(db, refresh_token)
            if claims.get("sid") != record.id or claims.get("sub") != record.user_id:
                raise AuthError("Access token does not match refresh token")
            tokens = self._tokens_for(record, record.user)
            db.commit()
        return tokens

    def _refresh(self, refresh_token: str) -> SessionTokens:
        with self.session_factory() as db:
            record = self._live_record(db, refresh_token)
            tokens = self._rotate(db, record)
            db.commit()
        return tokens

    def _change_password(self, current: SessionTokens, password: str) -> SessionTokens:
        with self.session_factory() as db:
            record = self._live_record(db, current.refresh_token)
            user = record.user
            if check_password_hash(user.password_hash, password):
                raise AuthError("New password should be different from the old password")
            user.password_hash = generate_password_hash(password)
            if record.kind == AuthSessionKind.recovery:
                # a recovered account continues on an ordinary session
                record.revoked_at = utcnow()
                tokens = self._issue(db, user, AuthSessionKind.password)
            else:
                tokens = current
            db.commit()
        return tokens

    def _revoke(self, refresh_token: str) -> None:
        with self.session_factory() as db:
            record = db.scalar(
                select(AuthSession).where(AuthSession.refresh_token == refresh_token)
            )
            if record is not None and record.revoked_at is None:
                record.revoked_at = utcnow()
            db.commit()

    # operations

    async def sign_in_with_password(self, email: str, password: str) -> SessionTokens:
        email = email.strip().lower()
        tokens = await run_in_threadpool(self._password_sign_in, email, password)
        self._persist(tokens)
        logger.info(f"auth_sign_in: user={tokens.user.id}")
        await self._emit(AuthEvent.signed_in, tokens)
        return tokens

    async def sign_up(self, email: str, password: str, redirect_to: str) -> SignUpResult:
        email = email.strip().lower()
        if not EMAIL_RE.match(email):
            raise AuthError("Invalid email address")
        if len(password) < self.settings.min_password_length:
            raise AuthError(
                f"Password should be at least {self.settings.min_password_length} characters"
            )
        auth_user, tokens, link = await run_in_threadpool(
            self._register, email, password, redirect_to
        )
        logger.info(f"auth_sign_up: user={auth_user.id} session={tokens is not None}")
        if tokens is None:
            self.send_link("confirmation", email, link)
            return SignUpResult(user=auth_user, session=None)
        self._persist(tokens)
        await self._emit(AuthEvent.signed_in, tokens)
        return SignUpResult(user=auth_user, session=tokens)

    async def confirm_email(self, token: str) -> AuthUser:
        try:
            payload = self._serializer("email-confirmation").loads(
                token, max_age=self.settings.recovery_token_ttl_secs * 24
            )
        except (BadSignature, SignatureExpired) as exc:
            raise AuthError("Confirmation link is invalid or has expired") from exc
        return await run_in_threadpool(self._mark_confirmed, payload.get("sub"))

    async def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        email = email.strip().lower()
        if not EMAIL_RE.match(email):
            raise AuthError("Invalid email address")
        tokens = await run_in_threadpool(self._issue_recovery, email)
        if tokens is None:
            # unknown addresses get the same response as known ones
            logger.info("auth_recovery_requested: unknown email")
            return
        params = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "type": "recovery",
        }
        self.send_link("recovery", email, f"{redirect_to}?{urlencode(params)}")

    async def set_session(self, access_token: str, refresh_token: str) -> SessionTokens:
        """Adopt a session from a token pair, e.g. the one carried by a recovery link."""
        try:
            claims = self._serializer("access-token").loads(access_token)
        except BadSignature as exc:
            raise AuthError("Invalid access token") from exc
        tokens = await run_in_threadpool(self._adopt, claims, refresh_token)
        self._persist(tokens)
        event = (
            AuthEvent.password_recovery
            if tokens.kind == AuthSessionKind.recovery
            else AuthEvent.signed_in
        )
        await self._emit(event, tokens)
        return tokens

    async def refresh_session(self) -> SessionTokens:
        refresh_token = self.storage.get(STORAGE_REFRESH_TOKEN)
        if not refresh_token:
            raise AuthError("Auth session missing")
        tokens = await run_in_threadpool(self._refresh, refresh_token)
        self._persist(tokens)
        await self._emit(AuthEvent.token_refreshed, tokens)
        return tokens

    async def get_session(self) -> Optional[SessionTokens]:
        """Return the current session, restoring or refreshing it from storage if needed."""
        if self._current is not None and self._current.expires_at > utcnow():
            return self._current
        if not self.storage.get(STORAGE_REFRESH_TOKEN):
            return None
        try:
            return await self.refresh_session()
        except AuthError:
            logger.info("auth_session_restore_failed")
            self._persist(None)
            return None

    async def update_user(self, password: str) -> AuthUser:
        current = self._current
        if current is None:
            raise AuthError("Auth session missing")
        if len(password) < self.settings.min_password_length:
            raise AuthError(
                f"Password should be at least {self.settings.min_password_length} characters"
            )
        tokens = await run_in_threadpool(self._change_password, current, password)
        self._persist(tokens)
        logger.info(f"auth_password_updated: user={tokens.user.id}")
        await self._emit(AuthEvent.user_updated, tokens)
        return tokens.user

    async def sign_out(self) -> None:
        current = self._current
        refresh_token = current.refresh_token if current else self.storage.get(
            STORAGE_REFRESH_TOKEN
        )
        self._persist(None)
        if refresh_token:
            await run_in_threadpool(self._revoke, refresh_token)
        await self._emit(AuthEvent.signed_out, None)


def purge_expired_sessions(db: Session, *, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = db.execute(
        delete(AuthSession).where(
            or_(AuthSession.expires_at <= now, AuthSession.revoked_at.isnot(None))
        )
    )
    return result.rowcount or 0

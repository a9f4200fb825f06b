import asyncio
import threading
from datetime import timedelta
from urllib.parse import parse_qsl, urlsplit

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from werkzeug.security import generate_password_hash

from auth import LocalAuthClient, purge_expired_sessions
from auth_state import AuthState, AuthStateMachine, Location, recovery_tokens
from config import Settings, get_settings
from database import Base, build_engine, make_session_factory
from models import AuthSession, Role, User, utcnow
from whitelist import WhitelistService

SITE = "http://finance.test"


def make_factory() -> sessionmaker:
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)


def make_settings(**overrides) -> Settings:
    values = dict(vars(get_settings()))
    values.update(site_url=SITE, require_email_confirmation=False, whitelist_roles={})
    values.update(overrides)
    return Settings(**values)


def make_machine(factory, settings, *, links=None, storage=None, role_check=None):
    sent = links if links is not None else []
    client = LocalAuthClient(
        factory,
        settings,
        storage=storage,
        send_link=lambda kind, email, link: sent.append((kind, email, link)),
    )
    whitelist = WhitelistService(factory, settings, role_check=role_check)
    return AuthStateMachine(client, whitelist)


def add_user(factory, email="ania@example.com", password="secret1", role=Role.member) -> str:
    with factory() as db:
        user = User(
            email=email,
            password_hash=generate_password_hash(password),
            email_confirmed_at=utcnow(),
        )
        db.add(user)
        db.commit()
        user_id = user.id
    if role is not None:
        WhitelistService(factory, make_settings()).grant(user_id, role)
    return user_id


def test_sign_up_provisions_allow_listed_email() -> None:
    async def scenario() -> None:
        factory = make_factory()
        settings = make_settings(whitelist_roles={"konki@example.com": "owner"})
        machine = make_machine(factory, settings)
        await machine.start(Location(f"{SITE}/"))
        assert machine.state == AuthState.unauthenticated

        result = await machine.sign_up("Konki@example.com", "secret1")

        assert result.ok
        assert machine.state == AuthState.whitelisted
        assert machine.whitelist.lookup_role(machine.user.id) == Role.owner

    asyncio.run(scenario())


def test_sign_up_with_confirmation_waits_for_link() -> None:
    async def scenario() -> None:
        factory = make_factory()
        links = []
        settings = make_settings(require_email_confirmation=True)
        machine = make_machine(factory, settings, links=links)
        await machine.start(Location(f"{SITE}/"))

        assert (await machine.sign_up("ania@example.com", "secret1")).ok
        assert machine.session is None
        assert (await machine.sign_in("ania@example.com", "secret1")).error == "Email not confirmed"

        kind, _, link = links[0]
        assert kind == "confirmation"
        token = dict(parse_qsl(urlsplit(link).query))["confirmation_token"]
        assert (await machine.confirm_email(token)).ok

        assert (await machine.sign_in("ania@example.com", "secret1")).ok
        assert machine.state == AuthState.not_whitelisted

    asyncio.run(scenario())


def test_duplicate_sign_up_and_bad_credentials_are_reported() -> None:
    async def scenario() -> None:
        factory = make_factory()
        add_user(factory)
        machine = make_machine(factory, make_settings())
        await machine.start(Location(f"{SITE}/"))

        assert (await machine.sign_up("ania@example.com", "secret1")).error == "User already registered"
        assert (await machine.sign_in("ania@example.com", "wrong")).error == "Invalid login credentials"
        assert machine.user is None

    asyncio.run(scenario())


def test_recovery_link_wins_over_whitelist() -> None:
    async def scenario() -> None:
        factory = make_factory()
        settings = make_settings()
        add_user(factory)
        links = []
        requester = make_machine(factory, settings, links=links)
        await requester.start(Location(f"{SITE}/"))
        assert (await requester.reset_password("ania@example.com")).ok
        kind, _, link = links[0]
        assert kind == "recovery"
        assert link.startswith(f"{SITE}/reset-password?")

        machine = make_machine(factory, settings)
        location = Location(link)
        await machine.start(location)

        assert machine.is_whitelisted
        assert machine.state == AuthState.password_recovery
        assert recovery_tokens(location.href) is None
        assert location.href == f"{SITE}/reset-password"

        # the scrubbed location has nothing left to consume
        assert await machine.consume_recovery_tokens(location) is False
        assert machine.state == AuthState.password_recovery

    asyncio.run(scenario())


def test_failed_password_update_keeps_recovery_mode() -> None:
    async def scenario() -> None:
        factory = make_factory()
        settings = make_settings()
        add_user(factory)
        links = []
        requester = make_machine(factory, settings, links=links)
        await requester.start(Location(f"{SITE}/"))
        await requester.reset_password("ania@example.com")

        machine = make_machine(factory, settings)
        await machine.start(Location(links[0][2]))

        mismatch = await machine.update_password("newpass1", "newpass2")
        assert mismatch.error == "Passwords do not match"
        short = await machine.update_password("abc", "abc")
        assert short.error == "Password must be at least 6 characters long"
        same = await machine.update_password("secret1", "secret1")
        assert not same.ok
        assert machine.state == AuthState.password_recovery

        assert (await machine.update_password("newpass1", "newpass1")).ok
        assert machine.state == AuthState.whitelisted

        other = make_machine(factory, settings)
        await other.start(Location(f"{SITE}/"))
        assert (await other.sign_in("ania@example.com", "newpass1")).ok

    asyncio.run(scenario())


def test_invalid_recovery_link_sets_error() -> None:
    async def scenario() -> None:
        machine = make_machine(make_factory(), make_settings())
        link = f"{SITE}/reset-password#access_token=bogus&refresh_token=bogus&type=recovery"

        await machine.start(Location(link))

        assert machine.recovery_error == "Invalid access token"
        assert machine.state == AuthState.unauthenticated

    asyncio.run(scenario())


def test_password_update_without_session_is_rejected() -> None:
    async def scenario() -> None:
        machine = make_machine(make_factory(), make_settings())
        await machine.start(Location(f"{SITE}/reset-password"))

        result = await machine.update_password("newpass1", "newpass1")

        assert result.error == "No active reset session. Open the link from the email again."

    asyncio.run(scenario())


def test_whitelist_falls_back_to_direct_lookup() -> None:
    class BrokenRoleCheck:
        async def has_role(self, user_id: str) -> bool:
            raise RuntimeError("role function unavailable")

    async def scenario() -> None:
        factory = make_factory()
        add_user(factory)
        add_user(factory, email="guest@example.com", role=None)
        settings = make_settings()

        member = make_machine(factory, settings, role_check=BrokenRoleCheck())
        await member.start(Location(f"{SITE}/"))
        await member.sign_in("ania@example.com", "secret1")
        assert member.state == AuthState.whitelisted

        guest = make_machine(factory, settings, role_check=BrokenRoleCheck())
        await guest.start(Location(f"{SITE}/"))
        await guest.sign_in("guest@example.com", "secret1")
        assert guest.state == AuthState.not_whitelisted

    asyncio.run(scenario())


def test_stale_whitelist_result_is_discarded() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        entered = asyncio.Event()

        class SlowRoleCheck:
            async def has_role(self, user_id: str) -> bool:
                entered.set()
                await gate.wait()
                return True

        factory = make_factory()
        add_user(factory)
        machine = make_machine(factory, make_settings(), role_check=SlowRoleCheck())
        await machine.start(Location(f"{SITE}/"))

        task = asyncio.create_task(machine.sign_in("ania@example.com", "secret1"))
        await entered.wait()
        assert machine.state == AuthState.unverified

        await machine.sign_out()
        gate.set()
        await task

        assert machine.is_whitelisted is False
        assert machine.state == AuthState.unauthenticated

    asyncio.run(scenario())


def test_session_is_restored_from_storage() -> None:
    async def scenario() -> None:
        factory = make_factory()
        settings = make_settings()
        add_user(factory)
        storage: dict[str, str] = {}
        first = make_machine(factory, settings, storage=storage)
        await first.start(Location(f"{SITE}/"))
        await first.sign_in("ania@example.com", "secret1")
        first.close()

        second = make_machine(factory, settings, storage=dict(storage))
        await second.start(Location(f"{SITE}/"))

        assert second.state == AuthState.whitelisted
        assert second.user.email == "ania@example.com"

    asyncio.run(scenario())


def test_sign_out_clears_state() -> None:
    async def scenario() -> None:
        factory = make_factory()
        add_user(factory)
        storage: dict[str, str] = {}
        machine = make_machine(factory, make_settings(), storage=storage)
        await machine.start(Location(f"{SITE}/"))
        await machine.sign_in("ania@example.com", "secret1")

        await machine.sign_out()

        assert machine.state == AuthState.unauthenticated
        assert storage == {}
        assert machine.snapshot()["user"] is None

    asyncio.run(scenario())


def test_operations_before_start_are_rejected() -> None:
    machine = make_machine(make_factory(), make_settings())

    with pytest.raises(RuntimeError):
        asyncio.run(machine.sign_in("ania@example.com", "secret1"))


def test_purge_removes_expired_and_revoked_sessions() -> None:
    factory = make_factory()
    user_id = add_user(factory)
    now = utcnow()
    with factory() as db:
        db.add_all(
            [
                AuthSession(user_id=user_id, refresh_token="live", expires_at=now + timedelta(days=1)),
                AuthSession(user_id=user_id, refresh_token="old", expires_at=now - timedelta(seconds=1)),
                AuthSession(
                    user_id=user_id,
                    refresh_token="revoked",
                    expires_at=now + timedelta(days=1),
                    revoked_at=now,
                ),
            ]
        )
        db.commit()

        assert purge_expired_sessions(db, now=now) == 2
        db.commit()
        assert db.scalars(select(AuthSession.refresh_token)).all() == ["live"]


def test_password_hashing_runs_off_the_event_loop(monkeypatch) -> None:
    import auth as auth_module

    hash_threads = []
    real_check = auth_module.check_password_hash

    def recording_check(pwhash: str, password: str) -> bool:
        hash_threads.append(threading.get_ident())
        return real_check(pwhash, password)

    monkeypatch.setattr(auth_module, "check_password_hash", recording_check)

    async def scenario() -> int:
        factory = make_factory()
        add_user(factory)
        machine = make_machine(factory, make_settings())
        await machine.start(Location(f"{SITE}/"))
        assert (await machine.sign_in("ania@example.com", "secret1")).ok
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert hash_threads
    assert loop_thread not in hash_threads

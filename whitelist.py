import logging
from typing import Optional, Protocol

from sqlalchemy import exists, select
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from auth import AuthUser
from config import Settings, get_settings
from models import Role, UserRole


logger = logging.getLogger(__name__)


class RoleCheck(Protocol):
    async def has_role(self, user_id: str) -> bool: ...


class SqlRoleCheck:
    """Membership check executed as a single EXISTS query."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def _exists(self, user_id: str) -> bool:
        with self.session_factory() as db:
            return bool(
                db.scalar(select(exists().where(UserRole.user_id == user_id)))
            )

    async def has_role(self, user_id: str) -> bool:
        return await run_in_threadpool(self._exists, user_id)


class WhitelistService:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        *,
        role_check: Optional[RoleCheck] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.role_check = role_check or SqlRoleCheck(session_factory)

    def _provision(self, user_id: str, role: Role) -> tuple[Role, bool]:
        with self.session_factory() as db:
            existing = db.scalar(select(UserRole).where(UserRole.user_id == user_id))
            if existing is not None:
                return existing.role, False
            db.add(UserRole(user_id=user_id, role=role))
            db.commit()
        return role, True

    async def ensure_whitelisted(self, user: AuthUser) -> Optional[Role]:
        """Grant the configured role to an allow-listed email; existing rows are left alone."""
        role_name = self.settings.whitelist_roles.get(user.email.strip().lower())
        if role_name is None:
            return None
        role, created = await run_in_threadpool(self._provision, user.id, Role(role_name))
        if created:
            logger.info(f"whitelist_provisioned: user={user.id} role={role.value}")
        return role

    def lookup_role(self, user_id: str) -> Optional[Role]:
        with self.session_factory() as db:
            row = db.scalar(select(UserRole).where(UserRole.user_id == user_id))
            return row.role if row is not None else None

    async def is_whitelisted(self, user_id: str) -> bool:
        try:
            return await self.role_check.has_role(user_id)
        except Exception as exc:
            logger.warning(f"whitelist_check_failed: user={user_id} error={exc}")
        return await run_in_threadpool(self.lookup_role, user_id) is not None

    def grant(self, user_id: str, role: Role = Role.member) -> None:
        with self.session_factory() as db:
            existing = db.scalar(select(UserRole).where(UserRole.user_id == user_id))
            if existing is None:
                db.add(UserRole(user_id=user_id, role=role))
            else:
                existing.role = role
            db.commit()

# rbac.py — Role-based access control with stack-pattern scoping
# A grant is (role, server, permission, stack_pattern). Decisions are a pure
# OR over every grant reachable through the user's roles; the admin role
# short-circuits to allow. Admin-scope permissions ("admin.*") are held only
# through the admin role.

import re
import logging
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFound, Conflict, ValidationFailed, Forbidden
from models import (
    User, Role, Permission, Server, ServerRoleStackPermission, user_roles,
)

logger = logging.getLogger("berth.rbac")

ADMIN_ROLE = "admin"
ADMIN_SCOPE_PREFIX = "admin."

PERM_STACKS_READ = "stacks.read"
PERM_STACKS_MANAGE = "stacks.manage"
PERM_STACKS_CREATE = "stacks.create"
PERM_FILES_READ = "files.read"
PERM_FILES_WRITE = "files.write"
PERM_LOGS_READ = "logs.read"
PERM_REGISTRIES_MANAGE = "registries.manage"


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> "re.Pattern":
    parts = [re.escape(p) for p in pattern.split("*")]
    return re.compile("^" + ".*".join(parts) + "$", re.DOTALL)


def matches_pattern(name: str, pattern: str) -> bool:
    """Glob match where ``*`` covers any run of characters, including none."""
    if pattern == "*":
        return True
    if "*" not in pattern:
        return name == pattern
    return _compile(pattern).match(name) is not None


def pattern_specificity(pattern: str) -> int:
    """exact (3) > prefix/suffix (2) > contains (1) > "*" (0)"""
    if pattern == "*" or not pattern.strip("*"):
        return 0
    if "*" not in pattern:
        return 3
    if pattern.startswith("*") and pattern.endswith("*"):
        return 1
    return 2


def most_specific(patterns: Sequence[str], name: str) -> Optional[str]:
    matching = [p for p in patterns if matches_pattern(name, p)]
    if not matching:
        return None
    return max(matching, key=lambda p: (pattern_specificity(p), len(p)))


def validate_pattern(pattern: str) -> str:
    pattern = (pattern or "").strip()
    if not pattern:
        raise ValidationFailed("Stack pattern must not be empty")
    if any(ch in pattern for ch in "/\\ \t\n"):
        raise ValidationFailed(f"Invalid stack pattern: {pattern!r}")
    return pattern


def is_admin_permission(name: str) -> bool:
    return name.startswith(ADMIN_SCOPE_PREFIX)


class RBACService:
    """Answers (user, server, stack, permission) questions against the grant table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_user_roles(self, user_id: int) -> List[Role]:
        stmt = (
            select(Role)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id)
            .order_by(Role.name)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def has_role(self, user_id: int, role_name: str) -> bool:
        stmt = (
            select(Role.id)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id, Role.name == role_name)
            .limit(1)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def is_admin(self, user_id: int) -> bool:
        stmt = (
            select(Role.id)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id, Role.is_admin.is_(True))
            .limit(1)
        )
        return (await self.db.execute(stmt)).first() is not None

    def _grant_patterns(self, user_id: int, permission: str):
        return (
            select(ServerRoleStackPermission.server_id, ServerRoleStackPermission.stack_pattern)
            .join(Permission, Permission.id == ServerRoleStackPermission.permission_id)
            .join(user_roles, user_roles.c.role_id == ServerRoleStackPermission.role_id)
            .where(user_roles.c.user_id == user_id, Permission.name == permission)
        )

    async def has_permission_by_name(self, user_id: int, permission: str) -> bool:
        if await self.is_admin(user_id):
            return True
        if is_admin_permission(permission):
            return False
        row = (await self.db.execute(self._grant_patterns(user_id, permission).limit(1))).first()
        return row is not None

    async def user_has_stack_permission(
        self, user_id: int, server_id: int, stack_name: str, permission: str
    ) -> bool:
        if await self.is_admin(user_id):
            return True
        return await self.matching_grant(user_id, server_id, stack_name, permission) is not None

    async def user_has_any_stack_permission(self, user_id: int, server_id: int, permission: str) -> bool:
        if await self.is_admin(user_id):
            return True
        stmt = self._grant_patterns(user_id, permission).where(
            ServerRoleStackPermission.server_id == server_id
        ).limit(1)
        return (await self.db.execute(stmt)).first() is not None

    async def accessible_server_ids(self, user_id: int) -> List[int]:
        if await self.is_admin(user_id):
            stmt = select(Server.id).where(Server.is_active.is_(True)).order_by(Server.id)
            return list((await self.db.execute(stmt)).scalars().all())
        stmt = (
            select(ServerRoleStackPermission.server_id)
            .join(user_roles, user_roles.c.role_id == ServerRoleStackPermission.role_id)
            .join(Server, Server.id == ServerRoleStackPermission.server_id)
            .where(user_roles.c.user_id == user_id, Server.is_active.is_(True))
            .distinct()
            .order_by(ServerRoleStackPermission.server_id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def can_access_server(self, user_id: int, server_id: int) -> bool:
        return server_id in await self.accessible_server_ids(user_id)

    async def accessible_stack_patterns(
        self, user_id: int, server_id: int, permission: str = PERM_STACKS_READ
    ) -> List[str]:
        if await self.is_admin(user_id):
            return ["*"]
        stmt = self._grant_patterns(user_id, permission).where(
            ServerRoleStackPermission.server_id == server_id
        )
        patterns = sorted({pattern for _, pattern in (await self.db.execute(stmt)).all()})
        return patterns

    async def stack_permissions(self, user_id: int, server_id: int, stack_name: str) -> List[str]:
        """Names of every user-scope permission the user holds on one stack."""
        if await self.is_admin(user_id):
            stmt = select(Permission.name).where(
                ~Permission.name.startswith(ADMIN_SCOPE_PREFIX),
                Permission.is_api_key_only.is_(False),
            )
            return sorted((await self.db.execute(stmt)).scalars().all())
        stmt = (
            select(Permission.name, ServerRoleStackPermission.stack_pattern)
            .join(Permission, Permission.id == ServerRoleStackPermission.permission_id)
            .join(user_roles, user_roles.c.role_id == ServerRoleStackPermission.role_id)
            .where(user_roles.c.user_id == user_id, ServerRoleStackPermission.server_id == server_id)
        )
        names: Set[str] = set()
        for name, pattern in (await self.db.execute(stmt)).all():
            if matches_pattern(stack_name, pattern):
                names.add(name)
        return sorted(names)

    async def matching_grant(
        self, user_id: int, server_id: int, stack_name: str, permission: str
    ) -> Optional[str]:
        """Most specific pattern that grants the permission, or None."""
        stmt = self._grant_patterns(user_id, permission).where(
            ServerRoleStackPermission.server_id == server_id
        )
        patterns = [pattern for _, pattern in (await self.db.execute(stmt)).all()]
        return most_specific(patterns, stack_name)

    async def user_permission_names(self, user_id: int) -> List[str]:
        if await self.is_admin(user_id):
            stmt = select(Permission.name)
        else:
            stmt = (
                select(Permission.name)
                .join(ServerRoleStackPermission, ServerRoleStackPermission.permission_id == Permission.id)
                .join(user_roles, user_roles.c.role_id == ServerRoleStackPermission.role_id)
                .where(user_roles.c.user_id == user_id)
                .distinct()
            )
        return sorted((await self.db.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Role management
    # ------------------------------------------------------------------

    async def get_role(self, role_id: int) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFound("Role not found")
        return role

    async def get_permission(self, name: str) -> Permission:
        permission = (
            await self.db.execute(select(Permission).where(Permission.name == name))
        ).scalar_one_or_none()
        if permission is None:
            raise ValidationFailed(f"Unknown permission: {name}")
        return permission

    async def list_roles(self) -> List[Dict]:
        counts = dict(
            (await self.db.execute(
                select(user_roles.c.role_id, func.count()).group_by(user_roles.c.role_id)
            )).all()
        )
        roles = (await self.db.execute(select(Role).order_by(Role.id))).scalars().all()
        return [
            {
                "id": r.id,
                "name": r.name,
                "description": r.description,
                "is_admin": r.is_admin,
                "user_count": counts.get(r.id, 0),
            }
            for r in roles
        ]

    async def create_role(self, name: str, description: str = "") -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Role name is required")
        exists = (await self.db.execute(select(Role.id).where(Role.name == name))).first()
        if exists:
            raise Conflict(f"Role '{name}' already exists")
        role = Role(name=name, description=description or "", is_admin=False)
        self.db.add(role)
        await self.db.flush()
        return role

    async def update_role(self, role_id: int, name: Optional[str], description: Optional[str]) -> Role:
        role = await self.get_role(role_id)
        if role.is_admin:
            raise Forbidden("The admin role cannot be modified", error="immutable_role")
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationFailed("Role name is required")
            clash = (
                await self.db.execute(select(Role.id).where(Role.name == name, Role.id != role_id))
            ).first()
            if clash:
                raise Conflict(f"Role '{name}' already exists")
            role.name = name
        if description is not None:
            role.description = description
        await self.db.flush()
        return role

    async def delete_role(self, role_id: int) -> Role:
        role = await self.get_role(role_id)
        if role.is_admin:
            raise Forbidden("The admin role cannot be deleted", error="immutable_role")
        assigned = (
            await self.db.execute(
                select(func.count()).select_from(user_roles).where(user_roles.c.role_id == role_id)
            )
        ).scalar_one()
        if assigned:
            raise Conflict(f"Role '{role.name}' is assigned to {assigned} user(s)", error="role_in_use")
        await self.db.execute(
            delete(ServerRoleStackPermission).where(ServerRoleStackPermission.role_id == role_id)
        )
        await self.db.delete(role)
        await self.db.flush()
        return role

    async def assign_role(self, user: User, role_id: int) -> Role:
        role = await self.get_role(role_id)
        if await self.has_role(user.id, role.name):
            raise Conflict(f"User already has role '{role.name}'")
        await self.db.execute(user_roles.insert().values(user_id=user.id, role_id=role.id))
        await self.db.flush()
        return role

    async def revoke_role(self, user: User, role_id: int) -> Role:
        role = await self.get_role(role_id)
        result = await self.db.execute(
            user_roles.delete().where(user_roles.c.user_id == user.id, user_roles.c.role_id == role_id)
        )
        if result.rowcount == 0:
            raise NotFound(f"User does not have role '{role.name}'")
        await self.db.flush()
        return role

    async def list_stack_permissions(self, role_id: int) -> List[ServerRoleStackPermission]:
        await self.get_role(role_id)
        stmt = (
            select(ServerRoleStackPermission)
            .where(ServerRoleStackPermission.role_id == role_id)
            .order_by(ServerRoleStackPermission.server_id, ServerRoleStackPermission.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def add_stack_permission(
        self, role_id: int, server_id: int, permission_name: str, stack_pattern: str
    ) -> ServerRoleStackPermission:
        role = await self.get_role(role_id)
        if role.is_admin:
            raise ValidationFailed("The admin role already holds every permission")
        if await self.db.get(Server, server_id) is None:
            raise NotFound("Server not found")
        permission = await self.get_permission(permission_name)
        if is_admin_permission(permission.name) or permission.is_api_key_only:
            raise ValidationFailed(f"Permission '{permission.name}' cannot be granted per stack")
        stack_pattern = validate_pattern(stack_pattern)
        existing = (
            await self.db.execute(
                select(ServerRoleStackPermission.id).where(
                    ServerRoleStackPermission.role_id == role_id,
                    ServerRoleStackPermission.server_id == server_id,
                    ServerRoleStackPermission.permission_id == permission.id,
                    ServerRoleStackPermission.stack_pattern == stack_pattern,
                )
            )
        ).first()
        if existing:
            raise Conflict("Grant already exists")
        grant = ServerRoleStackPermission(
            role_id=role_id,
            server_id=server_id,
            permission_id=permission.id,
            stack_pattern=stack_pattern,
        )
        self.db.add(grant)
        await self.db.flush()
        await self.db.refresh(grant, attribute_names=["permission"])
        return grant

    async def remove_stack_permission(self, role_id: int, grant_id: int) -> ServerRoleStackPermission:
        grant = await self.db.get(ServerRoleStackPermission, grant_id)
        if grant is None or grant.role_id != role_id:
            raise NotFound("Grant not found")
        await self.db.delete(grant)
        await self.db.flush()
        return grant


def grant_to_dict(grant: ServerRoleStackPermission) -> Dict:
    return {
        "id": grant.id,
        "role_id": grant.role_id,
        "server_id": grant.server_id,
        "permission": grant.permission.name if grant.permission else None,
        "stack_pattern": grant.stack_pattern,
    }

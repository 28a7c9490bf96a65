# seeds.py — Idempotent seeding of the permission vocabulary and built-in roles
import logging
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Permission, Role, Server, ServerRoleStackPermission

logger = logging.getLogger("berth.seeds")

# name -> (description, is_api_key_only)
PERMISSIONS: Dict[str, Tuple[str, bool]] = {
    "stacks.read": ("View stacks and their containers", False),
    "stacks.manage": ("Start, stop and deploy stacks", False),
    "stacks.create": ("Create new stacks", False),
    "files.read": ("Read files in a stack directory", False),
    "files.write": ("Modify files in a stack directory", False),
    "logs.read": ("Read container logs", False),
    "docker.maintenance.read": ("View Docker disk usage and prune candidates", False),
    "docker.maintenance.write": ("Prune images, volumes and networks", False),
    "registries.manage": ("Manage registry credentials", False),
    "admin.users.read": ("List users", False),
    "admin.users.write": ("Create, delete and assign roles to users", False),
    "admin.roles.read": ("List roles and grants", False),
    "admin.roles.write": ("Create, update and delete roles and grants", False),
    "admin.permissions.read": ("List permissions", False),
    "admin.servers.read": ("List servers", False),
    "admin.servers.write": ("Create, update and delete servers", False),
    "admin.logs.read": ("Read operation and system logs", False),
    "admin.audit.read": ("Read the security audit trail", False),
    "admin.system.export": ("Export configuration", False),
    "admin.system.import": ("Import configuration", False),
    "admin.webhooks.manage": ("List and delete every user's webhooks", False),
    "servers.read": ("List servers through an API key", True),
    "logs.operations.read": ("Read operation logs through an API key", True),
}

ROLES: Dict[str, Tuple[str, bool]] = {
    "admin": ("Full access to every server, stack and setting", True),
    "user": ("Default role for new accounts", False),
    "developer": ("Deploy and edit stacks", False),
    "viewer": ("Read-only access to stacks and logs", False),
}

DEFAULT_GRANTS: Dict[str, List[str]] = {
    "developer": ["stacks.read", "stacks.manage", "files.read", "files.write", "logs.read"],
    "viewer": ["stacks.read", "logs.read"],
}


async def seed_permissions(db: AsyncSession) -> int:
    existing = set((await db.execute(select(Permission.name))).scalars().all())
    created = 0
    for name, (description, api_key_only) in PERMISSIONS.items():
        if name in existing:
            continue
        resource, _, action = name.rpartition(".")
        db.add(Permission(
            name=name,
            resource=resource,
            action=action,
            description=description,
            is_api_key_only=api_key_only,
        ))
        created += 1
    return created


async def seed_roles(db: AsyncSession) -> int:
    existing = set((await db.execute(select(Role.name))).scalars().all())
    created = 0
    for name, (description, is_admin) in ROLES.items():
        if name in existing:
            continue
        db.add(Role(name=name, description=description, is_admin=is_admin))
        created += 1
    return created


async def seed_default_grants(db: AsyncSession, server: Server) -> int:
    """Give the built-in developer and viewer roles their grants on one server."""
    roles = {
        r.name: r for r in (
            await db.execute(select(Role).where(Role.name.in_(list(DEFAULT_GRANTS))))
        ).scalars().all()
    }
    permissions = {
        p.name: p for p in (await db.execute(select(Permission))).scalars().all()
    }
    existing = set(
        (await db.execute(
            select(
                ServerRoleStackPermission.role_id,
                ServerRoleStackPermission.permission_id,
                ServerRoleStackPermission.stack_pattern,
            ).where(ServerRoleStackPermission.server_id == server.id)
        )).all()
    )
    created = 0
    for role_name, names in DEFAULT_GRANTS.items():
        role = roles.get(role_name)
        if role is None:
            continue
        for perm_name in names:
            permission = permissions.get(perm_name)
            if permission is None or (role.id, permission.id, "*") in existing:
                continue
            db.add(ServerRoleStackPermission(
                server_id=server.id,
                role_id=role.id,
                permission_id=permission.id,
                stack_pattern="*",
            ))
            created += 1
    await db.flush()
    return created


async def seed_all(db: AsyncSession) -> None:
    permissions = await seed_permissions(db)
    roles = await seed_roles(db)
    await db.commit()
    if permissions or roles:
        logger.info(f"Seeded {permissions} permissions and {roles} roles")

# tests/test_rbac.py — Pattern-scoped role grants
import pytest

from errors import Conflict, Forbidden, ValidationFailed
from rbac import (
    RBACService, matches_pattern, most_specific, pattern_specificity, validate_pattern,
)
from tests.conftest import make_user, grant, _role


class TestPatterns:
    @pytest.mark.parametrize("name,pattern,expected", [
        ("web-api", "web-*", True),
        ("web", "web-*", False),
        ("anything", "*", True),
        ("", "*", True),
        ("api-web", "*-web", True),
        ("my-web-app", "*web*", True),
        ("db-main", "web-*", False),
        ("web-api", "web-api", True),
        ("web-api-2", "web-api", False),
        ("web.api", "web?api", False),
    ])
    def test_matches_pattern(self, name, pattern, expected):
        assert matches_pattern(name, pattern) is expected

    def test_specificity_order(self):
        assert pattern_specificity("web-api") > pattern_specificity("web-*")
        assert pattern_specificity("web-*") > pattern_specificity("*web*")
        assert pattern_specificity("*web*") > pattern_specificity("*")

    def test_most_specific(self):
        assert most_specific(["*", "web-*", "web-api"], "web-api") == "web-api"
        assert most_specific(["*", "web-*"], "web-db") == "web-*"
        assert most_specific(["db-*"], "web-db") is None

    @pytest.mark.parametrize("pattern", ["", "   ", "web/*", "a b"])
    def test_validate_rejects(self, pattern):
        with pytest.raises(ValidationFailed):
            validate_pattern(pattern)


@pytest.mark.asyncio
class TestGrants:
    async def test_pattern_grant_scopes_stack_access(self, db_session, test_server):
        rbac = RBACService(db_session)
        role = await rbac.create_role("deployer", "deploys web stacks")
        await db_session.commit()
        await grant(db_session, role, test_server, "stacks.manage", "web-*")
        user = await make_user(db_session, "u1")
        await rbac.assign_role(user, role.id)
        await db_session.commit()

        assert await rbac.user_has_stack_permission(user.id, test_server.id, "web-api", "stacks.manage")
        assert not await rbac.user_has_stack_permission(user.id, test_server.id, "db-main", "stacks.manage")
        assert not await rbac.user_has_stack_permission(user.id, test_server.id, "web-api", "stacks.read")
        assert await rbac.accessible_server_ids(user.id) == [test_server.id]
        assert await rbac.accessible_stack_patterns(user.id, test_server.id, "stacks.manage") == ["web-*"]

    async def test_most_specific_grant_reported(self, db_session, test_server):
        rbac = RBACService(db_session)
        role = await rbac.create_role("deployer")
        await db_session.commit()
        await grant(db_session, role, test_server, "stacks.manage", "*")
        await grant(db_session, role, test_server, "stacks.manage", "web-*")
        user = await make_user(db_session, "u1")
        await rbac.assign_role(user, role.id)
        await db_session.commit()

        assert await rbac.matching_grant(user.id, test_server.id, "web-api", "stacks.manage") == "web-*"
        assert await rbac.matching_grant(user.id, test_server.id, "db-main", "stacks.manage") == "*"
        assert await rbac.matching_grant(user.id, test_server.id, "db-main", "stacks.read") is None

    async def test_admin_short_circuits(self, db_session, admin_user, test_server):
        rbac = RBACService(db_session)
        assert await rbac.is_admin(admin_user.id)
        assert await rbac.user_has_stack_permission(admin_user.id, test_server.id, "anything", "stacks.manage")
        assert await rbac.has_permission_by_name(admin_user.id, "admin.users.write")
        assert await rbac.accessible_stack_patterns(admin_user.id, test_server.id) == ["*"]

    async def test_admin_permissions_only_through_admin_role(self, db_session, test_user, test_server):
        rbac = RBACService(db_session)
        assert not await rbac.has_permission_by_name(test_user.id, "admin.users.read")
        with pytest.raises(ValidationFailed):
            await rbac.add_stack_permission(
                (await _role(db_session, "developer")).id, test_server.id, "admin.users.read", "*"
            )

    async def test_grant_and_revoke_restore_state(self, db_session, test_server):
        rbac = RBACService(db_session)
        role = await _role(db_session, "viewer")
        user = await make_user(db_session, "bob", roles=["viewer"])
        before = await rbac.stack_permissions(user.id, test_server.id, "web")

        added = await rbac.add_stack_permission(role.id, test_server.id, "stacks.read", "web")
        await db_session.commit()
        assert await rbac.stack_permissions(user.id, test_server.id, "web") == ["stacks.read"]
        with pytest.raises(Conflict):
            await rbac.add_stack_permission(role.id, test_server.id, "stacks.read", "web")

        await rbac.remove_stack_permission(role.id, added.id)
        await db_session.commit()
        assert await rbac.stack_permissions(user.id, test_server.id, "web") == before

    async def test_admin_role_is_immutable(self, db_session):
        rbac = RBACService(db_session)
        admin = await _role(db_session, "admin")
        with pytest.raises(Forbidden):
            await rbac.delete_role(admin.id)
        with pytest.raises(Forbidden):
            await rbac.update_role(admin.id, "root", None)

    async def test_role_in_use_cannot_be_deleted(self, db_session):
        rbac = RBACService(db_session)
        role = await rbac.create_role("ops")
        await db_session.commit()
        user = await make_user(db_session, "carol")
        await rbac.assign_role(user, role.id)
        await db_session.commit()
        with pytest.raises(Conflict):
            await rbac.delete_role(role.id)
        await rbac.revoke_role(user, role.id)
        await rbac.delete_role(role.id)
        await db_session.commit()
        assert all(r["name"] != "ops" for r in await rbac.list_roles())

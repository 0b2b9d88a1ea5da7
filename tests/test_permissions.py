# Tests for the PermissionEngine (ownership + allow/deny lists)

import pytest

from guild_vault.exceptions import NotFoundError, ValidationError
from guild_vault.vault.models import (
    Account,
    Identity,
    Permission,
    PermissionAction,
    PermissionType,
)
from guild_vault.vault.permissions import PermissionEngine, permission_matches


@pytest.fixture
def engine(store):
    return PermissionEngine(store)


@pytest.fixture
def account_id(store):
    return store.create_account({"name": "Main", "login": "guild01"}, owner_id="1001").id


def _perm(ptype, value, action="allow"):
    return Permission(id=f"perm_{ptype}_{value}_{action}", type=PermissionType(ptype),
                      value=value, action=PermissionAction(action))


class TestEvaluate:
    def test_owner_always_allowed(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001",
                          permissions=[_perm("userId", "1001", "deny")])
        decision = engine.evaluate(account, Identity.of("1001"))
        assert decision.allowed
        assert decision.reason == "owner"

    def test_not_whitelisted_by_default(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001")
        decision = engine.evaluate(account, Identity.of("1002", "bob"))
        assert not decision.allowed
        assert decision.reason == "not whitelisted"
        assert decision.matched == ()

    def test_role_allow(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001",
                          permissions=[_perm("roleId", "officers")])
        decision = engine.evaluate(account, Identity.of("1002", "bob", ["officers"]))
        assert decision.allowed
        assert decision.reason == "explicitly allowed"
        assert [p.value for p in decision.matched] == ["officers"]

    def test_deny_beats_allow(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001", permissions=[
            _perm("roleId", "officers", "allow"),
            _perm("userId", "1002", "deny"),
        ])
        decision = engine.evaluate(account, Identity.of("1002", "bob", ["officers"]))
        assert not decision.allowed
        assert decision.reason == "explicitly blocked"
        assert [p.type for p in decision.matched] == [PermissionType.USER_ID]

    def test_deny_order_independent(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001", permissions=[
            _perm("userId", "1002", "deny"),
            _perm("roleId", "officers", "allow"),
        ])
        assert not engine.evaluate(account, Identity.of("1002", "", ["officers"])).allowed

    def test_duplicate_entries(self, engine):
        account = Account(id="a", name="n", login="l", owner_id="1001", permissions=[
            _perm("userId", "1002", "allow"),
            Permission(id="dup", type=PermissionType.USER_ID, value="1002"),
        ])
        decision = engine.evaluate(account, Identity.of("1002"))
        assert decision.allowed
        assert len(decision.matched) == 2

    def test_legacy_account_without_owner(self, engine):
        account = Account(id="a", name="n", login="l", owner_id=None)
        assert not engine.evaluate(account, Identity.of("")).allowed


class TestMatching:
    def test_username_case_insensitive(self):
        assert permission_matches(_perm("username", "Bob"), Identity.of("1", "bOB"))

    def test_username_empty_identity(self):
        assert not permission_matches(_perm("username", "bob"), Identity.of("1", ""))

    def test_user_id_exact(self):
        assert permission_matches(_perm("userId", "1002"), Identity.of("1002"))
        assert not permission_matches(_perm("userId", "1002"), Identity.of("10020"))

    def test_role_membership(self):
        identity = Identity.of("1", "x", ["a", "b"])
        assert permission_matches(_perm("roleId", "b"), identity)
        assert not permission_matches(_perm("roleId", "c"), identity)


class TestStoredAccounts:
    def test_check_permission(self, engine, account_id, bob):
        assert engine.check_permission(account_id, Identity.of("1001")).reason == "owner"
        assert not engine.check_permission(account_id, bob).allowed

    def test_check_unknown_account(self, engine, bob):
        with pytest.raises(NotFoundError):
            engine.check_permission("acc_missing", bob)

    def test_add_and_remove(self, engine, account_id, bob):
        perm = engine.add_permission(account_id, "username", "  BOB ", "allow")
        assert perm.id.startswith("perm_")
        assert perm.value == "BOB"
        assert engine.check_permission(account_id, bob).allowed

        assert engine.remove_permission(account_id, perm.id) is True
        assert not engine.check_permission(account_id, bob).allowed
        assert engine.remove_permission(account_id, perm.id) is False

    def test_enum_arguments(self, engine, account_id, bob):
        engine.add_permission(account_id, PermissionType.ROLE_ID, "members", PermissionAction.DENY)
        assert engine.check_permission(account_id, bob).reason == "explicitly blocked"

    @pytest.mark.parametrize("ptype,value,action", [
        ("email", "x", "allow"),
        ("userId", "x", "maybe"),
        ("userId", "", "allow"),
        ("userId", "   ", "allow"),
    ])
    def test_add_invalid(self, engine, account_id, ptype, value, action):
        with pytest.raises(ValidationError):
            engine.add_permission(account_id, ptype, value, action)

    def test_add_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            engine.add_permission("acc_missing", "userId", "1")

    def test_remove_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            engine.remove_permission("acc_missing", "perm_x")

    def test_accessible_accounts(self, engine, store, bob):
        shared = store.create_account({"name": "Shared", "login": "s"}, owner_id="1001")
        store.create_account({"name": "Private", "login": "p"}, owner_id="1001")
        mine = store.create_account({"name": "Bobs", "login": "b"}, owner_id=bob.user_id)
        blocked = store.create_account({"name": "Blocked", "login": "x"}, owner_id="1001")
        engine.add_permission(shared.id, "roleId", "members")
        engine.add_permission(blocked.id, "roleId", "members")
        engine.add_permission(blocked.id, "username", "BOB", "deny")

        names = [a.name for a in engine.get_accessible_accounts(bob)]
        assert names == ["Bobs", "Shared"]
        assert mine.id in [a.id for a in engine.get_accessible_accounts(bob)]

    def test_can_manage(self, engine, account_id, bob, admin):
        assert engine.can_manage(account_id, Identity.of("1001"))
        assert engine.can_manage(account_id, admin)
        assert not engine.can_manage(account_id, bob)

    def test_can_manage_allowed_user_is_not_manager(self, engine, account_id, bob):
        engine.add_permission(account_id, "userId", bob.user_id)
        assert engine.check_permission(account_id, bob).allowed
        assert not engine.can_manage(account_id, bob)

    def test_can_manage_unknown(self, engine, admin):
        with pytest.raises(NotFoundError):
            engine.can_manage("acc_missing", admin)

    def test_admin_flag_does_not_grant_access(self, engine, account_id, admin):
        assert not engine.check_permission(account_id, admin).allowed

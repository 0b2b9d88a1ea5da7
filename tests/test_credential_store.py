# Tests for the CredentialStore (SQLite-backed shared accounts)
#
# Coverage:
#   - CRUD: create, get, list ordering, update, delete
#   - Secrets encrypted at rest, summaries expose only has_* flags
#   - Validation: required fields, server, unique names, TOTP secret
#   - Permission records: append order, removal, cascade on delete
#   - Concurrent updates never tear a record

import sqlite3
import threading

import pytest

from guild_vault.exceptions import (
    ConfigurationError,
    DecryptionError,
    NotFoundError,
    ValidationError,
)
from guild_vault.vault.credential_store import CredentialStore, generate_permission_id
from guild_vault.vault.encryption import CipherEngine
from guild_vault.vault.models import (
    Permission,
    PermissionAction,
    PermissionType,
    Server,
)

TOTP_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def _account(store, name="Main Storage", **extra):
    fields = {"name": name, "login": "guild01", "password": "hunter2"}
    fields.update(extra)
    return store.create_account(fields, owner_id="1001")


def _permission(ptype=PermissionType.USER_ID, value="1002", action=PermissionAction.ALLOW):
    return Permission(
        id=generate_permission_id(), type=ptype, value=value, action=action,
        added_at="2026-01-01T00:00:00+00:00",
    )


class TestCreate:
    def test_create_returns_summary(self, store):
        summary = _account(store, kafra_password="kafra!", totp_secret=TOTP_SECRET)
        assert summary.id.startswith("acc_")
        assert summary.name == "Main Storage"
        assert summary.login == "guild01"
        assert summary.server == Server.FREYA
        assert summary.owner_id == "1001"
        assert summary.has_password and summary.has_kafra_password and summary.has_totp_secret
        assert summary.permissions == []
        assert summary.created_at == summary.updated_at

    def test_summary_has_no_secret_values(self, store):
        data = _account(store).to_dict()
        assert "password" not in data
        assert "hunter2" not in str(data)

    def test_optional_secrets_absent(self, store):
        summary = store.create_account({"name": "Alt", "login": "alt"}, owner_id="1")
        assert not summary.has_password
        assert not summary.has_kafra_password
        assert not summary.has_totp_secret

    def test_secrets_encrypted_at_rest(self, store):
        summary = _account(store, kafra_password="kafra!")
        conn = sqlite3.connect(str(store.db_path))
        row = conn.execute(
            "SELECT password, kafra_password FROM accounts WHERE id = ?", (summary.id,)
        ).fetchone()
        conn.close()
        assert "hunter2" not in row[0]
        assert "kafra!" not in row[1]
        assert row[0].count(":") == 2

    def test_server_choice(self, store):
        summary = _account(store, server="nidhogg")
        assert summary.server == Server.NIDHOGG

    def test_unknown_server(self, store):
        with pytest.raises(ValidationError):
            _account(store, server="ASGARD")

    @pytest.mark.parametrize("fields", [
        {"login": "x"},
        {"name": "x"},
        {"name": "   ", "login": "x"},
        {"name": "x", "login": ""},
    ])
    def test_name_and_login_required(self, store, fields):
        with pytest.raises(ValidationError):
            store.create_account(fields, owner_id="1")

    def test_unknown_field(self, store):
        with pytest.raises(ValidationError, match="Unknown"):
            _account(store, owner="me")

    def test_duplicate_name_case_insensitive(self, store):
        _account(store, name="Main")
        with pytest.raises(ValidationError, match="already exists"):
            _account(store, name="MAIN")

    def test_invalid_totp_secret(self, store):
        with pytest.raises(ValidationError):
            _account(store, totp_secret="not base32!")

    def test_totp_parameters_stored(self, store):
        summary = _account(store, totp_secret=TOTP_SECRET, totp_algorithm="SHA256",
                           totp_digits=8, totp_period=60)
        params = store.get_totp_parameters(summary.id)
        assert (params.algorithm, params.digits, params.period) == ("SHA256", 8, 60)

    def test_disabled_cipher(self, tmp_path):
        store = CredentialStore(CipherEngine(None), db_path=str(tmp_path / "v.db"))
        with pytest.raises(ConfigurationError):
            store.create_account({"name": "a", "login": "b", "password": "c"}, owner_id="1")
        # No secrets: nothing to encrypt
        assert store.create_account({"name": "a", "login": "b"}, owner_id="1").id


class TestRead:
    def test_get_unknown(self, store):
        assert store.get_account("acc_missing") is None

    def test_get_all_sorted_by_name(self, store):
        for name in ("charlie", "Alpha", "bravo"):
            _account(store, name=name)
        assert [a.name for a in store.get_all_accounts()] == ["Alpha", "bravo", "charlie"]

    def test_decrypted_credentials(self, store):
        summary = _account(store, kafra_password="kafra!", totp_secret="gezd gnbv gy3t qojq")
        creds = store.get_decrypted_credentials(summary.id)
        assert creds.password == "hunter2"
        assert creds.kafra_password == "kafra!"
        assert creds.totp_secret == "GEZDGNBVGY3TQOJQ"
        assert creds.server == Server.FREYA
        assert "hunter2" not in repr(creds)

    def test_decrypted_credentials_absent_fields(self, store):
        summary = store.create_account({"name": "a", "login": "b"}, owner_id="1")
        creds = store.get_decrypted_credentials(summary.id)
        assert creds.password is None and creds.totp_secret is None

    def test_decrypted_credentials_unknown(self, store):
        assert store.get_decrypted_credentials("acc_missing") is None

    def test_tampered_blob_raises(self, store):
        summary = _account(store)
        conn = sqlite3.connect(str(store.db_path))
        conn.execute("UPDATE accounts SET password = ? WHERE id = ?",
                     ("AAAAAAAAAAAAAAAA:AAAAAAAAAAAAAAAAAAAAAA==:AAAA", summary.id))
        conn.commit()
        conn.close()
        with pytest.raises(DecryptionError):
            store.get_decrypted_credentials(summary.id)

    def test_wrong_key_raises(self, store, tmp_path):
        summary = _account(store)
        other = CredentialStore(CipherEngine(b"\x07" * 32), db_path=str(store.db_path))
        with pytest.raises(DecryptionError):
            other.get_decrypted_credentials(summary.id)

    def test_totp_parameters_none_without_secret(self, store):
        assert store.get_totp_parameters(_account(store).id) is None
        assert store.get_totp_parameters("acc_missing") is None

    def test_ownership(self, store):
        summary = _account(store)
        assert store.is_account_owner(summary.id, "1001")
        assert not store.is_account_owner(summary.id, "1002")
        assert not store.is_account_owner("acc_missing", "1001")
        assert store.get_account_owner(summary.id) == "1001"
        assert store.get_account_owner("acc_missing") is None

    def test_persists_across_instances(self, store, cipher):
        summary = _account(store)
        reopened = CredentialStore(cipher, db_path=str(store.db_path))
        assert reopened.get_decrypted_credentials(summary.id).password == "hunter2"


class TestUpdate:
    def test_update_fields(self, store):
        summary = _account(store)
        updated = store.update_account(summary.id, {"login": "guild02", "server": "YGGDRASIL"})
        assert updated.login == "guild02"
        assert updated.server == Server.YGGDRASIL
        assert updated.id == summary.id
        assert updated.owner_id == "1001"
        assert updated.updated_at >= summary.updated_at

    def test_update_reencrypts_secret(self, store):
        summary = _account(store)
        store.update_account(summary.id, {"password": "new-pass"})
        assert store.get_decrypted_credentials(summary.id).password == "new-pass"

    @pytest.mark.parametrize("cleared", ["", None])
    def test_clear_secret(self, store, cleared):
        summary = _account(store, totp_secret=TOTP_SECRET)
        updated = store.update_account(summary.id, {"password": cleared, "totp_secret": cleared})
        assert not updated.has_password
        assert not updated.has_totp_secret
        assert store.get_decrypted_credentials(summary.id).password is None

    def test_untouched_fields_survive(self, store):
        summary = _account(store, kafra_password="kafra!")
        store.update_account(summary.id, {"name": "Renamed"})
        creds = store.get_decrypted_credentials(summary.id)
        assert creds.name == "Renamed"
        assert creds.password == "hunter2"
        assert creds.kafra_password == "kafra!"

    def test_update_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.update_account("acc_missing", {"login": "x"})

    def test_rename_clash(self, store):
        _account(store, name="One")
        two = _account(store, name="Two")
        with pytest.raises(ValidationError):
            store.update_account(two.id, {"name": "one"})

    def test_rename_same_name_different_case(self, store):
        summary = _account(store, name="One")
        assert store.update_account(summary.id, {"name": "ONE"}).name == "ONE"

    def test_unknown_field(self, store):
        summary = _account(store)
        with pytest.raises(ValidationError):
            store.update_account(summary.id, {"owner_id": "evil"})
        assert store.get_account_owner(summary.id) == "1001"

    def test_partial_totp_parameters(self, store):
        summary = _account(store, totp_secret=TOTP_SECRET, totp_digits=8)
        store.update_account(summary.id, {"totp_period": 60})
        params = store.get_totp_parameters(summary.id)
        assert (params.digits, params.period) == (8, 60)

    def test_concurrent_updates_do_not_tear(self, store):
        summary = _account(store)
        errors = []

        def worker(n):
            try:
                for i in range(10):
                    store.update_account(summary.id, {
                        "login": f"login-{n}-{i}",
                        "password": f"pass-{n}-{i}",
                    })
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        creds = store.get_decrypted_credentials(summary.id)
        # login and password always come from the same write
        assert creds.login.replace("login-", "") == creds.password.replace("pass-", "")


class TestDelete:
    def test_delete(self, store):
        summary = _account(store)
        assert store.delete_account(summary.id) is True
        assert store.get_account(summary.id) is None
        assert store.delete_account(summary.id) is False

    def test_delete_frees_name(self, store):
        summary = _account(store, name="Reuse")
        store.delete_account(summary.id)
        assert _account(store, name="Reuse").id != summary.id

    def test_delete_cascades_permissions(self, store):
        summary = _account(store)
        store.add_permission_record(summary.id, _permission())
        store.delete_account(summary.id)
        conn = sqlite3.connect(str(store.db_path))
        count = conn.execute("SELECT COUNT(*) FROM permissions").fetchone()[0]
        conn.close()
        assert count == 0


class TestPermissionRecords:
    def test_append_order_preserved(self, store):
        summary = _account(store)
        first = store.add_permission_record(summary.id, _permission(value="a"))
        second = store.add_permission_record(summary.id, _permission(value="b"))
        third = store.add_permission_record(summary.id, _permission(value="a"))
        ids = [p.id for p in store.get_account(summary.id).permissions]
        assert ids == [first.id, second.id, third.id]

    def test_add_to_unknown_account(self, store):
        with pytest.raises(NotFoundError):
            store.add_permission_record("acc_missing", _permission())

    def test_remove(self, store):
        summary = _account(store)
        perm = store.add_permission_record(summary.id, _permission())
        assert store.remove_permission_record(summary.id, perm.id) is True
        assert store.get_account(summary.id).permissions == []
        assert store.remove_permission_record(summary.id, perm.id) is False

    def test_remove_from_other_account(self, store):
        one = _account(store, name="One")
        two = _account(store, name="Two")
        perm = store.add_permission_record(one.id, _permission())
        assert store.remove_permission_record(two.id, perm.id) is False
        assert len(store.get_account(one.id).permissions) == 1

    def test_remove_from_unknown_account(self, store):
        with pytest.raises(NotFoundError):
            store.remove_permission_record("acc_missing", "perm_x")

    def test_record_shape(self, store):
        summary = _account(store)
        store.add_permission_record(summary.id, _permission())
        record = store.load_account(summary.id).to_record()
        assert record["ownerId"] == "1001"
        assert record["password"].count(":") == 2
        assert record["permissions"][0]["type"] == "userId"

# Tests for the guild-vault operator CLI

import json

import pytest

from guild_vault.__main__ import main
from guild_vault.vault.service import SharedAccountVault
from guild_vault.config import load_config


@pytest.fixture
def env(monkeypatch, tmp_path, master_key):
    monkeypatch.setenv("GUILD_VAULT_MASTER_KEY", master_key.hex())
    monkeypatch.setenv("GUILD_VAULT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("GUILD_VAULT_LOG_DIR", str(tmp_path / "logs"))
    return ["--env-file", str(tmp_path / "missing.env")]


@pytest.fixture
def seeded(env, alice):
    vault = SharedAccountVault(load_config(env[1]))
    summary = vault.create_account({
        "name": "Main Storage",
        "login": "guild01",
        "password": "hunter2",
        "totp_secret": "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ",
    }, alice)
    return summary


def test_keygen(capsys):
    assert main(["keygen"]) == 0
    key = capsys.readouterr().out.strip()
    assert len(bytes.fromhex(key)) == 32


def test_list(env, seeded, capsys):
    assert main(env + ["list"]) == 0
    out = capsys.readouterr().out
    assert seeded.id in out
    assert "P-T" in out
    assert "hunter2" not in out


def test_list_json(env, seeded, capsys):
    assert main(env + ["list", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data[0]["name"] == "Main Storage"
    assert data[0]["has_password"] is True


def test_list_empty(env, capsys):
    assert main(env + ["list"]) == 0
    assert "No accounts" in capsys.readouterr().out


def test_totp(env, seeded, capsys):
    assert main(env + ["totp", seeded.id]) == 0
    code = capsys.readouterr().out.split()[0]
    assert code.isdigit() and len(code) == 6


def test_totp_unknown(env, capsys):
    assert main(env + ["totp", "acc_missing"]) == 1
    assert "not found" in capsys.readouterr().err


def test_logs_and_prune(env, seeded, capsys):
    assert main(env + ["logs", "--account", seeded.id, "--json"]) == 0
    entries = json.loads(capsys.readouterr().out)
    assert [e["action"] for e in entries] == ["create"]

    assert main(env + ["prune-logs", "--days", "30"]) == 0
    assert "Removed 0" in capsys.readouterr().out


def test_vault_error_exit_code(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("GUILD_VAULT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("GUILD_VAULT_LOG_DIR", str(tmp_path / "logs"))
    assert main(["--env-file", str(tmp_path / "missing.env"), "prune-logs", "--days", "-1"]) == 1
    assert "Error" in capsys.readouterr().err

"""
Shared pytest fixtures for the Guild Vault test suite.

Autouse fixtures below isolate tests from live data:
  - Event logger    -> temp directory  (no test events in ./audit_logs)
  - Vault env vars  -> cleared         (a developer's .env never leaks in)
"""

import io
import secrets

import pytest
import qrcode

from guild_vault.config import VaultConfig
from guild_vault.vault.credential_store import CredentialStore
from guild_vault.vault.encryption import CipherEngine
from guild_vault.vault.models import Identity


@pytest.fixture(autouse=True)
def _isolate_event_log(tmp_path, monkeypatch):
    """Redirect the global EventLogger to a temp directory for every test."""
    import guild_vault.core.event_log as event_mod

    old_logger = event_mod._event_logger
    event_mod._event_logger = None

    orig_init = event_mod.EventLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(event_mod.EventLogger, "__init__", patched_init)

    yield

    if event_mod._event_logger is not None:
        event_mod._event_logger.close()
    event_mod._event_logger = old_logger


@pytest.fixture(autouse=True)
def _clear_vault_env(monkeypatch):
    for name in (
        "GUILD_VAULT_MASTER_KEY",
        "ENCRYPTION_KEY",
        "GUILD_VAULT_DATA_DIR",
        "GUILD_VAULT_LOG_DIR",
        "GUILD_VAULT_QR_TIMEOUT",
        "GUILD_VAULT_ENROLLMENT_TTL",
        "GUILD_VAULT_ACCESS_LOG_RETENTION_DAYS",
        "GUILD_VAULT_REVEAL_DENIAL_REASON",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def master_key() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def cipher(master_key) -> CipherEngine:
    return CipherEngine(master_key)


@pytest.fixture
def store(cipher, tmp_path) -> CredentialStore:
    return CredentialStore(cipher, db_path=str(tmp_path / "vault.db"))


@pytest.fixture
def vault_config(master_key, tmp_path) -> VaultConfig:
    return VaultConfig(
        master_key=master_key,
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "audit_logs",
    )


@pytest.fixture
def alice() -> Identity:
    return Identity.of("1001", "Alice", role_ids=["officers"])


@pytest.fixture
def bob() -> Identity:
    return Identity.of("1002", "bob", role_ids=["members"])


@pytest.fixture
def admin() -> Identity:
    return Identity.of("9000", "gm", is_admin=True)


def make_qr_png(payload: str) -> bytes:
    """Render ``payload`` as a QR code PNG."""
    image = qrcode.make(payload)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def qr_png():
    return make_qr_png

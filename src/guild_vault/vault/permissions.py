# Guild Vault - Permission Engine
#
# Decides whether an identity may read an account's credentials.
#
# Precedence (first rule that applies wins):
#   1. identity.user_id == account.owner_id   -> allow ("owner")
#   2. collect matching entries: userId exact, username case-insensitive,
#      roleId membership
#   3. any matching deny                       -> deny  ("explicitly blocked")
#   4. any matching allow                      -> allow ("explicitly allowed")
#   5. otherwise                               -> deny  ("not whitelisted")
#
# Evaluation is pure over the loaded account; mutations go through the
# credential store, which serializes them.

import logging
from datetime import datetime, timezone
from typing import List

from ..exceptions import NotFoundError, ValidationError
from .credential_store import CredentialStore, generate_permission_id
from .models import (
    REASON_ALLOWED,
    REASON_BLOCKED,
    REASON_NOT_WHITELISTED,
    REASON_OWNER,
    Account,
    AccountSummary,
    Identity,
    Permission,
    PermissionAction,
    PermissionDecision,
    PermissionType,
    coerce_enum,
)

logger = logging.getLogger(__name__)


def permission_matches(permission: Permission, identity: Identity) -> bool:
    """True if a single permission entry applies to ``identity``."""
    if permission.type == PermissionType.USER_ID:
        return permission.value == identity.user_id
    if permission.type == PermissionType.USERNAME:
        return bool(identity.username) and (
            permission.value.casefold() == identity.username.casefold()
        )
    if permission.type == PermissionType.ROLE_ID:
        return permission.value in identity.role_ids
    return False


class PermissionEngine:
    """Ownership plus flat allow/deny lists. Deny beats allow."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def evaluate(self, account: Account, identity: Identity) -> PermissionDecision:
        """Apply the precedence rules to an already loaded account."""
        if account.owner_id is not None and identity.user_id == account.owner_id:
            return PermissionDecision(True, REASON_OWNER)

        matched = tuple(p for p in account.permissions if permission_matches(p, identity))
        denies = tuple(p for p in matched if p.action == PermissionAction.DENY)
        if denies:
            return PermissionDecision(False, REASON_BLOCKED, denies)

        allows = tuple(p for p in matched if p.action == PermissionAction.ALLOW)
        if allows:
            return PermissionDecision(True, REASON_ALLOWED, allows)

        return PermissionDecision(False, REASON_NOT_WHITELISTED)

    def check_permission(self, account_id: str, identity: Identity) -> PermissionDecision:
        """Evaluate ``identity`` against a stored account.

        Raises:
            NotFoundError: Unknown account id.
        """
        account = self.store.load_account(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        decision = self.evaluate(account, identity)
        logger.debug(
            "Permission check account=%s user=%s allowed=%s reason=%s",
            account_id, identity.user_id, decision.allowed, decision.reason,
        )
        return decision

    def get_accessible_accounts(self, identity: Identity) -> List[AccountSummary]:
        """Summaries of every account ``identity`` may read."""
        return [
            account.to_summary()
            for account in self.store.load_all_accounts()
            if self.evaluate(account, identity).allowed
        ]

    def add_permission(
        self,
        account_id: str,
        permission_type,
        value: str,
        action=PermissionAction.ALLOW,
    ) -> Permission:
        """Append an allow/deny entry.

        Duplicate (type, value) pairs are accepted; deny still wins.

        Raises:
            ValidationError: Bad type or action, blank value.
            NotFoundError: Unknown account id.
        """
        ptype = coerce_enum(PermissionType, permission_type, "permission type")
        paction = coerce_enum(PermissionAction, action, "permission action")
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Permission value is required")

        permission = Permission(
            id=generate_permission_id(),
            type=ptype,
            value=value.strip(),
            action=paction,
            added_at=datetime.now(timezone.utc).isoformat(timespec="microseconds"),
        )
        self.store.add_permission_record(account_id, permission)
        logger.info(
            "Permission added to %s: %s %s=%s",
            account_id, paction.value, ptype.value, permission.value,
        )
        return permission

    def remove_permission(self, account_id: str, permission_id: str) -> bool:
        """Remove an entry; False if the account has no such permission."""
        removed = self.store.remove_permission_record(account_id, permission_id)
        if removed:
            logger.info("Permission %s removed from %s", permission_id, account_id)
        return removed

    def can_manage(self, account_id: str, identity: Identity) -> bool:
        """Owner or administrator may edit, delete and manage permissions."""
        owner = self.store.get_account_owner(account_id)
        if owner is None and self.store.get_account(account_id) is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return identity.is_admin or (owner is not None and owner == identity.user_id)

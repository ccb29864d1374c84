"""
Reconciliation Audit Chain

Append-only, tamper-evident audit trail for reconciliation actions.

Each entry carries:
- previous_hash: chain_hash of the organization's preceding entry
- chain_hash: HMAC-SHA256 over the entry's canonical JSON (including
  previous_hash)

Editing any recorded field, or removing/reordering entries, breaks
verification. The HMAC key is derived once from AUDIT_HMAC_KEY with scrypt.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    ReconciliationAction,
    ReconciliationAuditLogDB,
    generate_uuid,
    utc_now,
)
from reconciliation.balance import to_money
from reconciliation.errors import AuditKeyNotConfiguredError

logger = logging.getLogger(__name__)

AUDIT_HMAC_SALT = b"audit-hmac-salt"

# scrypt cost parameters; changing them invalidates every stored chain
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32


@lru_cache(maxsize=4)
def derive_audit_key(master_key: str) -> bytes:
    """Derive the HMAC key from the master secret (cached per secret)."""
    return hashlib.scrypt(
        master_key.encode("utf-8"),
        salt=AUDIT_HMAC_SALT,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=KEY_LENGTH,
    )


def get_audit_key() -> bytes:
    """
    HMAC key for the configured AUDIT_HMAC_KEY.

    Raises:
        AuditKeyNotConfiguredError: AUDIT_HMAC_KEY is not set
    """
    master_key = get_settings().AUDIT_HMAC_KEY
    if not master_key:
        raise AuditKeyNotConfiguredError(
            "AUDIT_HMAC_KEY environment variable required for audit log HMAC"
        )
    return derive_audit_key(master_key)


def _money_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(to_money(value))


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def canonical_audit_payload(entry: Any) -> str:
    """
    Canonical JSON of the hashed fields.

    Amounts are rendered as 2-place strings and timestamps as naive UTC
    ISO text, so a row read back from the database hashes the same as the
    object that was written.
    """
    performed_at = entry.performed_at
    payload = {
        "id": entry.id,
        "organization_id": entry.organization_id,
        "sequence": entry.sequence,
        "reconciliation_id": entry.reconciliation_id,
        "transaction_id": entry.transaction_id,
        "statement_entry_id": entry.statement_entry_id,
        "action": _text(entry.action),
        "previous_status": _text(entry.previous_status),
        "new_status": _text(entry.new_status),
        "previous_balance": _money_text(entry.previous_balance),
        "new_balance": _money_text(entry.new_balance),
        "difference": _money_text(entry.difference),
        "notes": entry.notes,
        "performed_by": entry.performed_by,
        "performed_at": performed_at.replace(tzinfo=None).isoformat() if performed_at else None,
        "previous_hash": entry.previous_hash,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def compute_audit_hash(entry: Any, key: bytes) -> str:
    """HMAC-SHA256 hex digest of an audit entry."""
    return hmac.new(
        key,
        canonical_audit_payload(entry).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


@dataclass
class AuditChainVerification:
    """Outcome of verifying an organization's audit chain."""
    is_valid: bool
    entries_checked: int
    tampered_indices: List[int] = field(default_factory=list)
    broken_chain_indices: List[int] = field(default_factory=list)
    null_hash_indices: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "entries_checked": self.entries_checked,
            "tampered_indices": self.tampered_indices,
            "broken_chain_indices": self.broken_chain_indices,
            "null_hash_indices": self.null_hash_indices,
        }


def verify_audit_chain(entries: Sequence[Any], key: bytes) -> AuditChainVerification:
    """
    Verify a chain of audit entries ordered by sequence.

    - tampered: stored chain_hash differs from the recomputed one
    - broken chain: previous_hash does not point at the preceding entry
      (the first entry must have none)
    - null hash: entry was never hashed
    """
    tampered: List[int] = []
    broken: List[int] = []
    null_hashes: List[int] = []

    for i, entry in enumerate(entries):
        if not entry.chain_hash:
            null_hashes.append(i)
            continue

        if not entry.performed_at:
            tampered.append(i)
            continue

        expected = compute_audit_hash(entry, key)
        if not hmac.compare_digest(entry.chain_hash, expected):
            tampered.append(i)

        if i == 0:
            if entry.previous_hash is not None:
                broken.append(i)
        else:
            previous = entries[i - 1]
            if previous.chain_hash and entry.previous_hash != previous.chain_hash:
                broken.append(i)

    return AuditChainVerification(
        is_valid=not (tampered or broken or null_hashes),
        entries_checked=len(entries),
        tampered_indices=tampered,
        broken_chain_indices=broken,
        null_hash_indices=null_hashes,
    )


async def lock_organization_chain(db: AsyncSession, organization_id: str) -> None:
    """
    Hold the organization's chain lock until the transaction ends.

    PostgreSQL only (transaction-scoped advisory lock). SQLite serializes
    writers on its own.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(organization_id))))


async def append_audit_entry(
    db: AsyncSession,
    organization_id: str,
    action: ReconciliationAction,
    performed_by: str,
    reconciliation_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    statement_entry_id: Optional[str] = None,
    previous_status: Optional[str] = None,
    new_status: Optional[str] = None,
    previous_balance: Optional[Decimal] = None,
    new_balance: Optional[Decimal] = None,
    difference: Optional[Decimal] = None,
    notes: Optional[str] = None,
) -> ReconciliationAuditLogDB:
    """
    Add the next audit entry of an organization's chain to the session.

    The caller owns the transaction: the entry is committed (or rolled
    back) together with the change it records. Concurrent appends for the
    same organization wait on the chain lock, so sequences never collide.
    """
    key = get_audit_key()
    await lock_organization_chain(db, organization_id)

    result = await db.execute(
        select(ReconciliationAuditLogDB)
        .where(ReconciliationAuditLogDB.organization_id == organization_id)
        .order_by(ReconciliationAuditLogDB.sequence.desc())
        .limit(1)
    )
    last = result.scalar_one_or_none()

    entry = ReconciliationAuditLogDB(
        id=generate_uuid(),
        organization_id=organization_id,
        sequence=(last.sequence + 1) if last else 1,
        reconciliation_id=reconciliation_id,
        transaction_id=transaction_id,
        statement_entry_id=statement_entry_id,
        action=action,
        previous_status=_text(previous_status),
        new_status=_text(new_status),
        previous_balance=to_money(previous_balance) if previous_balance is not None else None,
        new_balance=to_money(new_balance) if new_balance is not None else None,
        difference=to_money(difference) if difference is not None else None,
        notes=notes,
        performed_by=performed_by,
        performed_at=utc_now(),
        previous_hash=last.chain_hash if last else None,
    )
    entry.chain_hash = compute_audit_hash(entry, key)

    db.add(entry)
    # Flush so a second append in the same transaction sees this entry
    await db.flush()

    logger.debug(
        "Audit entry appended",
        extra={"organization_id": organization_id, "action": _text(action), "sequence": entry.sequence},
    )
    return entry


async def list_organization_audit_entries(
    db: AsyncSession,
    organization_id: str,
) -> List[ReconciliationAuditLogDB]:
    result = await db.execute(
        select(ReconciliationAuditLogDB)
        .where(ReconciliationAuditLogDB.organization_id == organization_id)
        .order_by(ReconciliationAuditLogDB.sequence.asc())
    )
    return list(result.scalars().all())


async def verify_organization_chain(
    db: AsyncSession,
    organization_id: str,
) -> AuditChainVerification:
    """Load and verify an organization's full chain."""
    entries = await list_organization_audit_entries(db, organization_id)
    verification = verify_audit_chain(entries, get_audit_key())

    if not verification.is_valid:
        logger.warning(
            "Audit chain verification failed",
            extra={"organization_id": organization_id, **verification.to_dict()},
        )
    return verification

"""Audit logging service - PHI access and security event tracking.

Every PHI-touching operation records one entry here. Entries are append-only
and chained per organization (prev_hash -> entry_hash) so edits or deletions
made outside the ORM are detectable.

Security guidelines:
- NEVER log secrets or decrypted PHI in `changes`
- Use IDs and field names instead of values
- A failed write never fails the operation being audited
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from aba_core.core.config import settings
from aba_core.core.exceptions import AuditWriteFailure, Unauthorized
from aba_core.core.filters import audit_log_filter
from aba_core.core.permissions import can_view_audit_logs, require_session
from aba_core.core.structured_logging import build_log_context
from aba_core.db.enums import AuditAction, ConsentStatus
from aba_core.db.models import AuditLog
from aba_core.schemas.audit import AuditEvent, ConsentInfo, RequestMetadata
from aba_core.schemas.auth import Caller


logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # All zeros for first entry
DEFAULT_IP = "0.0.0.0"  # nosec B104


# =============================================================================
# Request metadata
# =============================================================================

def get_client_ip(request: Request | None) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, else the placeholder."""
    if not request:
        return DEFAULT_IP
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first[:45]
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()[:45]
    return DEFAULT_IP


def get_user_agent(request: Request | None) -> str | None:
    """Extract user agent from request."""
    if not request:
        return None
    ua = request.headers.get("user-agent", "")
    # Truncate to 500 chars (DB limit)
    return ua[:500] if ua else None


def extract_request_metadata(request: Request | None) -> RequestMetadata:
    if not request:
        return RequestMetadata()
    return RequestMetadata(
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        request_method=request.method,
        request_path=request.url.path[:500],
    )


# =============================================================================
# Consent classification
# =============================================================================

_TREATMENT_VERBS = frozenset({"create", "update", "view"})


def derive_consent(
    action: str,
    phi_accessed: bool,
    patient_id: int | None = None,
    fields_accessed: list[str] | None = None,
) -> ConsentInfo:
    """
    Classify an operation for the audit record.

    Annotation only: never used to grant or deny access.
    """
    tag = action.lower()
    if not phi_accessed:
        status, reason = ConsentStatus.NOT_REQUIRED, "No PHI accessed"
    elif "emergency" in tag:
        status, reason = ConsentStatus.EMERGENCY, "Emergency access"
    elif "audit" in tag or "list" in tag:
        status, reason = ConsentStatus.AUDIT, "Audit or listing access"
    elif _TREATMENT_VERBS.intersection(tag.split("_")):
        status, reason = ConsentStatus.TREATMENT, "Treatment operations"
    else:
        status, reason = ConsentStatus.ADMINISTRATIVE, "Administrative operations"

    return ConsentInfo(
        status=status,
        reason=reason,
        patient_id=patient_id,
        fields_accessed=list(fields_accessed or []),
    )


# =============================================================================
# Hash chain
# =============================================================================

def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    This MUST be used consistently everywhere hashes are computed.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def _hash_timestamp(value: datetime) -> str:
    # Naive UTC, so values read back from any backend hash identically
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def compute_entry_hash(entry: AuditLog, prev_hash: str) -> str:
    """
    Hash = SHA256(all immutable fields joined with |)

    The row id is not covered: the hash is computed before insert so rows
    are never updated after being written.
    """
    data = "|".join([
        prev_hash,
        str(entry.organization_id) if entry.organization_id is not None else "",
        str(entry.user_id) if entry.user_id is not None else "",
        entry.action,
        entry.resource_type or "",
        str(entry.resource_id) if entry.resource_id is not None else "",
        entry.ip_address or "",
        entry.user_agent or "",
        entry.request_method or "",
        entry.request_path or "",
        canonical_json(entry.changes),
        "1" if entry.phi_accessed else "0",
        "1" if entry.consent_verified else "0",
        _hash_timestamp(entry.created_at),
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _org_clause(org_id: int | None):
    if org_id is None:
        return AuditLog.organization_id.is_(None)
    return AuditLog.organization_id == org_id


def get_last_audit_hash(db: Session, org_id: int | None) -> str:
    """Hash of the most recent entry for an org (created_at + id ordering)."""
    result = db.execute(
        select(AuditLog.entry_hash)
        .where(_org_clause(org_id))
        .where(AuditLog.entry_hash.isnot(None))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(1)
    ).scalar()
    return result or GENESIS_HASH


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    broken_at_id: int | None = None


def verify_audit_chain(db: Session, org_id: int | None) -> ChainVerification:
    """Walk an organization's chain in order and report the first broken link."""
    entries = (
        db.query(AuditLog)
        .filter(_org_clause(org_id), AuditLog.entry_hash.isnot(None))
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
    prev_hash = GENESIS_HASH
    for index, entry in enumerate(entries):
        if entry.prev_hash != prev_hash or compute_entry_hash(entry, prev_hash) != entry.entry_hash:
            return ChainVerification(valid=False, checked=index, broken_at_id=entry.id)
        prev_hash = entry.entry_hash
    return ChainVerification(valid=True, checked=len(entries))


# =============================================================================
# Recording
# =============================================================================

def _build_entry(db: Session, event: AuditEvent) -> AuditLog:
    consent = event.consent or derive_consent(
        event.action,
        event.phi_accessed,
        patient_id=event.patient_id,
        fields_accessed=event.fields_accessed,
    )
    changes: dict[str, Any] = dict(event.changes or {})
    changes["consent"] = consent.model_dump(mode="json")

    entry = AuditLog(
        organization_id=event.organization_id,
        user_id=event.user_id,
        action=event.action,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        ip_address=event.metadata.ip_address or DEFAULT_IP,
        user_agent=event.metadata.user_agent,
        request_method=event.metadata.request_method,
        request_path=event.metadata.request_path,
        response_status=event.response_status,
        response_time_ms=event.response_time_ms,
        changes=changes,
        phi_accessed=event.phi_accessed,
        consent_verified=consent.status != ConsentStatus.EMERGENCY,
        created_at=datetime.now(timezone.utc),
    )
    if settings.AUDIT_HASH_CHAIN_ENABLED:
        prev_hash = get_last_audit_hash(db, event.organization_id)
        entry.prev_hash = prev_hash
        entry.entry_hash = compute_entry_hash(entry, prev_hash)
    return entry


def _write(db: Session, event: AuditEvent) -> AuditLog:
    try:
        with db.begin_nested():
            entry = _build_entry(db, event)
            db.add(entry)
            db.flush()
    except Exception as exc:
        raise AuditWriteFailure(f"Failed to record audit event {event.action}") from exc
    return entry


def record(db: Session, event: AuditEvent) -> int | None:
    """
    Append one audit entry.

    Runs in a savepoint so a failed write leaves the caller's transaction
    usable. Never raises: on failure the error is logged and None returned.

    Returns:
        The new entry id, or None when the write failed
    """
    try:
        entry = _write(db, event)
    except AuditWriteFailure:
        logger.exception(
            "Audit write failed",
            extra=build_log_context(user_id=event.user_id, org_id=event.organization_id),
        )
        return None
    return entry.id


def log_phi_access(
    db: Session,
    caller: Caller | None,
    action: AuditAction | str,
    resource_type: str,
    resource_id: int | None,
    *,
    patient_id: int | None = None,
    fields_accessed: list[str] | None = None,
    changes: dict | None = None,
    request: Request | None = None,
    phi_accessed: bool = True,
) -> int | None:
    """Convenience wrapper used by the services for caller-initiated events."""
    action_tag = action.value if isinstance(action, AuditAction) else action
    return record(
        db,
        AuditEvent(
            organization_id=caller.organization_id if caller else None,
            user_id=caller.user_id if caller else None,
            action=action_tag,
            resource_type=resource_type,
            resource_id=resource_id,
            phi_accessed=phi_accessed,
            changes=changes,
            patient_id=patient_id,
            fields_accessed=fields_accessed or [],
            metadata=extract_request_metadata(request),
        ),
    )


# =============================================================================
# Queries
# =============================================================================

def get_audit_logs(
    db: Session,
    caller: Caller | None,
    *,
    user_id: int | None = None,
    resource_type: str | None = None,
    resource_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    """
    Newest-first audit entries for the caller's organization.

    Raises:
        Unauthorized: Caller may not view audit logs
    """
    caller = require_session(caller)
    if not can_view_audit_logs(caller):
        raise Unauthorized("You don't have permission to view audit logs")

    query = db.query(AuditLog).filter(
        audit_log_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == resource_id)
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    log_phi_access(
        db, caller, AuditAction.LIST_AUDIT_LOGS, "audit_log", None,
        phi_accessed=False, changes={"count": len(logs)},
    )
    return logs


def get_phi_access_logs(
    db: Session,
    caller: Caller | None,
    start_date: datetime,
    end_date: datetime,
    limit: int = 1000,
) -> list[AuditLog]:
    """PHI access entries in a date range, for compliance reporting."""
    caller = require_session(caller)
    if not can_view_audit_logs(caller):
        raise Unauthorized("You don't have permission to view audit logs")

    return (
        db.query(AuditLog)
        .filter(
            audit_log_filter(caller.user_id, caller.role, caller.organization_id),
            AuditLog.phi_accessed.is_(True),
            AuditLog.created_at >= start_date,
            AuditLog.created_at <= end_date,
        )
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )

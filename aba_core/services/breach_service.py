"""
Breach detection service (HIPAA breach tracking).

Threshold checks and explicit reports produce a SecurityBreach row, an audit
entry (`security_breach_detected`) and, for HIGH/CRITICAL severity, an in-app
alert to every admin-tier member of the organization.

Detection is an observer: it never raises into the operation that triggered
it. A failed breach write is logged and the check returns None.

Breaches are written inside a savepoint on the caller's session and are not
committed here. The caller owns the transaction.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from aba_core.core.config import BreachThresholds, settings
from aba_core.core.exceptions import NotFound, Unauthorized
from aba_core.core.permissions import can_view_security_breaches, require_session
from aba_core.db.enums import AuditAction, BreachSeverity, BreachStatus, BreachType
from aba_core.db.models import AuditLog, SecurityBreach, User
from aba_core.schemas.audit import AuditEvent, RequestMetadata
from aba_core.schemas.auth import Caller
from aba_core.services import audit_service, notification_service


logger = logging.getLogger(__name__)

NOTIFY_SEVERITIES = frozenset({BreachSeverity.HIGH, BreachSeverity.CRITICAL})
STATISTICS_WINDOW_DAYS = 30


def _thresholds(thresholds: BreachThresholds | None) -> BreachThresholds:
    """Explicit thresholds, else the configured BREACH_* settings."""
    return thresholds or BreachThresholds.from_settings(settings)


def create_security_breach(
    db: Session,
    org_id: int,
    breach_type: BreachType,
    severity: BreachSeverity,
    description: str,
    user_id: int | None = None,
    affected_record_ids: list[int] | None = None,
    affected_record_type: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: dict | None = None,
) -> SecurityBreach | None:
    """
    Record a breach, audit it, and alert admins for HIGH/CRITICAL.

    Returns:
        The breach row, or None if it could not be written
    """
    try:
        with db.begin_nested():
            breach = SecurityBreach(
                organization_id=org_id,
                user_id=user_id,
                breach_type=breach_type.value,
                severity=severity.value,
                status=BreachStatus.OPEN.value,
                description=description,
                affected_record_ids=affected_record_ids,
                affected_record_type=affected_record_type,
                ip_address=ip_address,
                user_agent=user_agent,
                details=details,
            )
            db.add(breach)
            db.flush()

            if severity in NOTIFY_SEVERITIES:
                sent = notification_service.notify_security_admins(
                    db,
                    org_id,
                    title=f"Security Alert: {severity.value} severity breach detected",
                    message=description,
                )
                breach.notification_sent = bool(sent)
                db.flush()
    except Exception:
        logger.exception(
            "Failed to record security breach",
            extra={"org_id": org_id, "breach_type": breach_type.value},
        )
        return None

    audit_service.record(
        db,
        AuditEvent(
            organization_id=org_id,
            user_id=user_id,
            action=AuditAction.SECURITY_BREACH_DETECTED.value,
            resource_type="security",
            resource_id=breach.id,
            changes={
                "breach_type": breach_type.value,
                "severity": severity.value,
                "affected_record_ids": affected_record_ids,
                "affected_record_type": affected_record_type,
            },
            metadata=RequestMetadata(
                ip_address=ip_address or audit_service.DEFAULT_IP,
                user_agent=user_agent,
            ),
        ),
    )

    logger.error(
        "Security breach detected: type=%s severity=%s",
        breach_type.value,
        severity.value,
        extra={"org_id": org_id},
    )
    return breach


# =============================================================================
# Threshold checks
# =============================================================================


def check_failed_login_breach(
    db: Session,
    org_id: int,
    user_id: int,
    failed_attempts: int | None = None,
    thresholds: BreachThresholds | None = None,
    ip_address: str | None = None,
) -> SecurityBreach | None:
    """
    MEDIUM breach when failed logins reach the threshold.

    `failed_attempts` defaults to the user's stored counter.
    """
    thresholds = _thresholds(thresholds)
    if failed_attempts is None:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return None
        failed_attempts = user.failed_login_attempts

    if failed_attempts < thresholds.failed_login_attempts:
        return None

    return create_security_breach(
        db,
        org_id,
        BreachType.FAILED_LOGIN_THRESHOLD,
        BreachSeverity.MEDIUM,
        f"User {user_id} exceeded failed login threshold ({failed_attempts} attempts)",
        user_id=user_id,
        ip_address=ip_address,
        details={"failed_attempts": failed_attempts},
    )


def check_unusual_access_breach(
    db: Session,
    org_id: int,
    user_id: int,
    access_count: int,
    time_window_minutes: int = 60,
    thresholds: BreachThresholds | None = None,
) -> SecurityBreach | None:
    """HIGH breach when records accessed in the window reach the threshold."""
    thresholds = _thresholds(thresholds)
    if access_count < thresholds.unusual_access_count:
        return None

    return create_security_breach(
        db,
        org_id,
        BreachType.UNUSUAL_DATA_ACCESS,
        BreachSeverity.HIGH,
        f"Unusual data access pattern detected: {access_count} records accessed "
        f"in {time_window_minutes} minutes",
        user_id=user_id,
        details={"access_count": access_count, "time_window_minutes": time_window_minutes},
    )


def count_recent_phi_access(
    db: Session,
    org_id: int,
    user_id: int,
    time_window_minutes: int = 60,
) -> int:
    """PHI-touching audit entries by the user inside the window."""
    since = datetime.now(timezone.utc) - timedelta(minutes=time_window_minutes)
    return db.query(func.count(AuditLog.id)).filter(
        AuditLog.organization_id == org_id,
        AuditLog.user_id == user_id,
        AuditLog.phi_accessed.is_(True),
        AuditLog.created_at >= since,
    ).scalar() or 0


def check_user_access_volume(
    db: Session,
    org_id: int,
    user_id: int,
    time_window_minutes: int = 60,
    thresholds: BreachThresholds | None = None,
) -> SecurityBreach | None:
    """Count the user's recent PHI access from the audit log and check it."""
    count = count_recent_phi_access(db, org_id, user_id, time_window_minutes)
    return check_unusual_access_breach(
        db, org_id, user_id, count, time_window_minutes, thresholds
    )


def check_data_export_anomaly(
    db: Session,
    org_id: int,
    user_id: int,
    export_count: int,
    thresholds: BreachThresholds | None = None,
) -> SecurityBreach | None:
    """MEDIUM breach when a single export reaches the export threshold."""
    thresholds = _thresholds(thresholds)
    if export_count < thresholds.data_export_count:
        return None

    return create_security_breach(
        db,
        org_id,
        BreachType.DATA_EXPORT_ANOMALY,
        BreachSeverity.MEDIUM,
        f"Large data export detected: {export_count} records",
        user_id=user_id,
        details={"export_count": export_count},
    )


def check_phi_access_violation(
    db: Session,
    org_id: int,
    user_id: int | None,
    patient_id: int,
    reason: str,
) -> SecurityBreach | None:
    """Unauthorized PHI access attempt (HIGH)."""
    return create_security_breach(
        db,
        org_id,
        BreachType.PHI_ACCESS_VIOLATION,
        BreachSeverity.HIGH,
        f"Unauthorized PHI access attempt: {reason}",
        user_id=user_id,
        affected_record_ids=[patient_id],
        affected_record_type="patient",
    )


def log_encryption_failure(
    db: Session,
    org_id: int,
    operation: str,
    record_type: str,
    record_id: int | None = None,
) -> SecurityBreach | None:
    """Encryption or integrity failure (CRITICAL)."""
    suffix = f" (ID: {record_id})" if record_id else ""
    return create_security_breach(
        db,
        org_id,
        BreachType.ENCRYPTION_FAILURE,
        BreachSeverity.CRITICAL,
        f"Encryption {operation} operation failed for {record_type}{suffix}",
        affected_record_ids=[record_id] if record_id else None,
        affected_record_type=record_type,
    )


# =============================================================================
# Review
# =============================================================================


def _require_breach_access(caller: Caller | None) -> Caller:
    caller = require_session(caller)
    if not can_view_security_breaches(caller):
        raise Unauthorized("You don't have permission to view security breaches")
    return caller


def list_breaches(
    db: Session,
    caller: Caller | None,
    status: BreachStatus | None = None,
    limit: int = 50,
) -> list[SecurityBreach]:
    caller = _require_breach_access(caller)
    query = db.query(SecurityBreach).filter(
        SecurityBreach.organization_id == caller.organization_id
    )
    if status:
        query = query.filter(SecurityBreach.status == status.value)
    return query.order_by(SecurityBreach.detected_at.desc(), SecurityBreach.id.desc()).limit(limit).all()


def resolve_breach(db: Session, caller: Caller | None, breach_id: int) -> SecurityBreach:
    caller = _require_breach_access(caller)
    breach = db.query(SecurityBreach).filter(
        SecurityBreach.id == breach_id,
        SecurityBreach.organization_id == caller.organization_id,
    ).first()
    if not breach:
        raise NotFound("Security breach not found")

    if breach.status != BreachStatus.RESOLVED.value:
        breach.status = BreachStatus.RESOLVED.value
        breach.resolved_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(breach)
    return breach


def get_breach_statistics(db: Session, caller: Caller | None) -> dict:
    """Totals, last-30-day breakdown by severity and type, and open count."""
    caller = _require_breach_access(caller)
    org_id = caller.organization_id
    since = datetime.now(timezone.utc) - timedelta(days=STATISTICS_WINDOW_DAYS)

    base = db.query(SecurityBreach).filter(SecurityBreach.organization_id == org_id)
    recent = base.filter(SecurityBreach.detected_at > since)

    by_severity = {severity.value.lower(): 0 for severity in BreachSeverity}
    for severity, count in (
        recent.with_entities(SecurityBreach.severity, func.count(SecurityBreach.id))
        .group_by(SecurityBreach.severity)
        .all()
    ):
        by_severity[severity.lower()] = count

    by_type = dict(
        recent.with_entities(SecurityBreach.breach_type, func.count(SecurityBreach.id))
        .group_by(SecurityBreach.breach_type)
        .all()
    )

    return {
        "total": base.count(),
        "last_30_days": recent.count(),
        "by_severity": by_severity,
        "by_type": by_type,
        "open_breaches": base.filter(SecurityBreach.status == BreachStatus.OPEN.value).count(),
    }

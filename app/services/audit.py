# app/services/audit.py
from sqlalchemy.orm import Session
from app.models.auth_audit_log import AuthAuditLog
from app.core.security import normalize_ip
from typing import Optional, Dict, Any
from fastapi import Request


def client_ip(request: Optional[Request]) -> Optional[str]:
    """Best-effort client address; honours the first X-Forwarded-For hop."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return normalize_ip(forwarded)
    return normalize_ip(request.client.host) if request.client else None


def log_auth_event(
    db: Session,
    event_type: str,
    user_id: Optional[int] = None,
    request: Optional[Request] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuthAuditLog:
    """
    Log an authentication or administrative event to the audit log.

    Args:
        db: Database session
        event_type: Type of event (register, login_success, login_failed,
            create_authme_binding, update_authme_binding, set_primary_authme_binding, unbind_authme, ...)
        user_id: Acting user ID (if known)
        request: FastAPI request object (to extract IP and user agent)
        target_type: Kind of object acted on (authme_binding, user, role)
        target_id: Identifier of the object acted on
        metadata: Additional metadata as dict

    Returns:
        AuthAuditLog: The created log entry
    """
    user_agent = request.headers.get("user-agent") if request else None

    log_entry = AuthAuditLog(
        user_id=user_id,
        event_type=event_type,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        ip_address=client_ip(request),
        user_agent=user_agent,
        event_metadata=metadata or {}
    )

    db.add(log_entry)
    db.flush()  # Get the ID without committing

    return log_entry

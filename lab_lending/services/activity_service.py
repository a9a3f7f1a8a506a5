from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import AuditLog, NotificationQueue


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def queue_notification(
    db: Session,
    notification_type: str,
    payload: str,
    loan_id: int | None = None,
    request_id: int | None = None,
) -> None:
    db.add(
        NotificationQueue(
            LoanID=loan_id,
            RequestID=request_id,
            NotificationType=notification_type,
            Payload=payload,
            CreatedAt=datetime.now(),
        )
    )


def list_pending_notifications(db: Session) -> list[dict]:
    notifications = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "loanID": n.LoanID,
            "requestID": n.RequestID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in notifications
    ]


def list_audit_entries(db: Session, entity_type: str, entity_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == entity_type)
        .where(AuditLog.EntityID == entity_id)
        .order_by(AuditLog.AuditID)
    ).scalars().all()
    return [
        {
            "auditID": row.AuditID,
            "action": row.Action,
            "details": row.Details,
            "userID": row.UserID,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]

import json
from sqlalchemy.orm import Session
from app.models.audit_log import AuditLog
from app.models.refund import RefundAuditLog

def log_audit(db: Session, actor_user_id: int | None, action: str, entity_type: str, entity_id, details: dict | None = None,
              ip_address: str | None = None):
    db.add(AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
        ip_address=ip_address,
    ))


def log_refund_audit(db: Session, refund_id: int, action: str, previous_status: str | None, new_status: str | None,
                     performed_by: int | None = None, performed_by_type: str = "system", details: dict | str | None = None,
                     ip_address: str | None = None):
    """Append a row to the refund's audit trail. The caller commits with the state change."""
    if isinstance(details, dict):
        details = json.dumps(details, ensure_ascii=False, default=str)
    db.add(RefundAuditLog(
        refund_id=refund_id,
        action=action,
        previous_status=previous_status,
        new_status=new_status,
        performed_by=performed_by,
        performed_by_type=performed_by_type,
        details=details,
        ip_address=ip_address,
    ))

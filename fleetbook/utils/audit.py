from sqlalchemy.orm import Session
from fleetbook.models.audit_log import AuditLog


def log_action(
    db: Session,
    user_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
    description: str | None = None,
    reference: str | None = None,
) -> None:
    """
    Stage an audit log entry on the caller's session.

    Args:
        db:          Active DB session (adds but does NOT commit, caller commits)
        user_id:     ID of the acting user (None = system action, e.g. status refresh)
        action:      CREATE, UPDATE, APPROVE, REJECT, CANCEL, CHECK_IN, CHECK_OUT, STATUS_CHANGE
        entity_type: "Reservation" or "Vehicle"
        entity_id:   Primary key of the affected record
        description: Human-readable description
        reference:   Reservation reference number, when there is one
    """
    db.add(AuditLog(
        userId=user_id,
        action=action,
        entityType=entity_type,
        entityId=entity_id,
        reference=reference,
        description=description,
    ))

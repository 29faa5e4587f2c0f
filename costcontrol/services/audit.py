import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models.models import AuditLog


def _serialize(data: Any) -> Optional[str]:
    if data is None:
        return None
    try:
        return json.dumps(data, default=str)
    except TypeError:
        return str(data)


def audit_log(
    db_session: Session,
    actor_user_id: Optional[int],
    action: str,
    target_entity_type: Optional[str] = None,
    target_entity_id: Optional[Any] = None,
    project_id: Optional[int] = None,
    changes: Any = None,
    commit: bool = True,
) -> AuditLog:
    """Append an audit entry.

    Pass ``commit=False`` to enlist the entry in the caller's transaction; the
    commitment ledger relies on this so that the order, the request link and the
    audit row land together or not at all.
    """
    entry = AuditLog(
        timestamp=datetime.now(timezone.utc),
        actor_user_id=actor_user_id,
        action=action,
        target_entity_type=target_entity_type,
        target_entity_id=None if target_entity_id is None else str(target_entity_id),
        project_id=project_id,
        changes=_serialize(changes),
    )
    db_session.add(entry)
    if commit:
        db_session.commit()
    else:
        db_session.flush()
    return entry

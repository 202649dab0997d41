"""Contract and job history: append-only rows, each signed with a SHA-256 hash."""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _signature(fields: Dict, secret: str) -> str:
    canonical = {k: v for k, v in fields.items() if v is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{payload}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """Record a history row for a contract or job inside the caller's transaction.

    Flushed but not committed; it is written or rolled back together with the
    change it describes. Unsigned when no secret is configured.
    """
    timestamp_utc = datetime.utcnow()
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret

    integrity_hash = None
    if secret:
        integrity_hash = _signature(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "actor_role": actor_role,
                "source": source,
                "timestamp_utc": timestamp_utc.isoformat(),
                "changes": changes_json,
                "context": context,
            },
            secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=str(actor_id) if actor_id else None,
        actor_role=actor_role,
        source=source or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=timestamp_utc,
        context=_jsonable(context),
        integrity_hash=integrity_hash,
    )
    db.add(audit_log)
    db.flush()
    return audit_log


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    # dates and UUIDs become strings
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).offset(offset).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Field -> {"before", "after"} for every snapshot field whose value changed."""
    diff = {}
    for key in set(before) | set(after):
        if before.get(key) != after.get(key):
            diff[key] = {"before": before.get(key), "after": after.get(key)}
    return diff

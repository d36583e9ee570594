from typing import Optional

from fastapi import Request
from sqlalchemy.orm import Session
from models.log import Log


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None or request.client is None:
        return None
    return request.client.host


def write_log(db: Session, *, actor_id, action, resource, status="SUCCESS", ip=None, meta=None, commit=True):
    """Append an audit row. Pass ``commit=False`` to ride on the caller's transaction."""
    entry = Log(actor_id=actor_id, action=action, resource=resource, status=status, ip=ip, meta=meta or {})
    db.add(entry)
    if commit:
        db.commit()
    return entry

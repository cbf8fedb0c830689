"""
GM (arbiter) identity lookups.

Authentication itself happens outside the core; by the time an arbiter id
reaches these helpers it is only used for authorization and attribution.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import Arbiter
from core.exceptions import NotArbiter


def require_active_arbiter(db: Session, arbiter_id: Optional[UUID]) -> Arbiter:
    """Resolve an arbiter id, rejecting unknown or deactivated accounts with NotArbiter."""
    if arbiter_id is None:
        raise NotArbiter()

    arbiter = db.query(Arbiter).filter(Arbiter.id == arbiter_id).first()
    if not arbiter or not arbiter.is_active:
        raise NotArbiter(f"Arbiter {arbiter_id} is not an active GM")
    return arbiter


def create_arbiter(db: Session, name: str, email: str) -> Arbiter:
    """Provision a GM account. Caller commits."""
    arbiter = Arbiter(name=name, email=email, is_active=True)
    db.add(arbiter)
    db.flush()
    return arbiter

"""Operational endpoints: invariant checks and repair."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from conversa.database import get_db
from conversa.services.health_service import check_and_heal_conversations, get_system_health

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health")
def system_health(db: Session = Depends(get_db)):
    """Get system health status."""
    return get_system_health(db)


@router.post("/heal")
def heal_system(db: Session = Depends(get_db)):
    """Check and heal invariant violations."""
    return check_and_heal_conversations(db)

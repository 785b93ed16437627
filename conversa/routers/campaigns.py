from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from conversa.database import get_db
from conversa.logging_config import get_logger
from conversa.models import Campaign
from conversa.schemas.campaign import (
    CampaignActionResponse,
    CampaignAnalytics,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
)
from conversa.services import campaign_service
from conversa.services.campaign_service import CampaignError

logger = get_logger("campaigns")

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

ERROR_STATUS = {"not_found": status.HTTP_404_NOT_FOUND, "invalid_status": status.HTTP_409_CONFLICT}


def _raise(exc: CampaignError, campaign_id: UUID) -> None:
    http_status = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    logger.info(f"Campaign action rejected: {exc}", extra={"context": {"campaign_id": str(campaign_id)}})
    raise HTTPException(status_code=http_status, detail=str(exc))


def _response(db: Session, campaign_id: UUID, scheduled: int | None = None) -> CampaignActionResponse:
    db.expire_all()
    campaign = db.get(Campaign, campaign_id)
    return CampaignActionResponse(success=True, campaign_id=campaign_id, status=campaign.status, scheduled=scheduled)


@router.post("/segment-preview", response_model=SegmentPreviewResponse)
def preview_segment(request: SegmentPreviewRequest, db: Session = Depends(get_db)):
    """Count the contacts a set of filters selects, with a sample of their numbers."""
    contacts = campaign_service.apply_segment_filters(db, [f.model_dump() for f in request.filters])
    return SegmentPreviewResponse(
        total=len(contacts), sample=[c.phone_number for c in contacts[: request.sample_size]]
    )


@router.post("/{campaign_id}/start", response_model=CampaignActionResponse)
def start_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    try:
        scheduled = campaign_service.start_campaign(db, campaign_id)
    except CampaignError as exc:
        db.rollback()
        _raise(exc, campaign_id)
    return _response(db, campaign_id, scheduled)


@router.post("/{campaign_id}/pause", response_model=CampaignActionResponse)
def pause_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    try:
        campaign_service.pause_campaign(db, campaign_id)
    except CampaignError as exc:
        db.rollback()
        _raise(exc, campaign_id)
    return _response(db, campaign_id)


@router.post("/{campaign_id}/resume", response_model=CampaignActionResponse)
def resume_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    try:
        scheduled = campaign_service.resume_campaign(db, campaign_id)
    except CampaignError as exc:
        db.rollback()
        _raise(exc, campaign_id)
    return _response(db, campaign_id, scheduled)


@router.post("/{campaign_id}/cancel", response_model=CampaignActionResponse)
def cancel_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    try:
        campaign_service.cancel_campaign(db, campaign_id)
    except CampaignError as exc:
        db.rollback()
        _raise(exc, campaign_id)
    return _response(db, campaign_id)


@router.get("/{campaign_id}/analytics", response_model=CampaignAnalytics)
def campaign_analytics(campaign_id: UUID, db: Session = Depends(get_db)):
    try:
        return campaign_service.get_analytics(db, campaign_id)
    except CampaignError as exc:
        _raise(exc, campaign_id)

from conversa.schemas.campaign import CampaignActionResponse, CampaignAnalytics, SegmentFilter, SegmentPreviewRequest
from conversa.schemas.conversation import ReadResponse, SurveyRequest, SurveyResponse
from conversa.schemas.webhook import WebhookAck, WebhookPayload

__all__ = [
    "WebhookPayload",
    "WebhookAck",
    "SegmentFilter",
    "SegmentPreviewRequest",
    "CampaignActionResponse",
    "CampaignAnalytics",
    "ReadResponse",
    "SurveyRequest",
    "SurveyResponse",
]

from app.schemas.campaign import (
    CampaignChannel,
    CampaignStatus,
    MessageStatus,
    SendCampaignRequest,
    ScheduleCampaignRequest,
    CampaignProgressResponse,
    DeliveryStatistics,
    CampaignAnalyticsResponse,
    RetryResult,
)
from app.schemas.tracking import (
    DeliveryEventType,
    DeliveryStatus,
    BounceType,
    ProviderEventType,
    ProviderEventRequest,
    TrackingResponse,
    DeliveryStatusResponse,
    BouncedEmailsResponse,
)

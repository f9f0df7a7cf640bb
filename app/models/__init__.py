from app.models.campaign import Campaign
from app.models.campaign_progress import CampaignProgress
from app.models.message_log import MessageLog
from app.models.delivery_event import DeliveryEvent
from app.models.engagement import FirstEngagement
from app.models.subscriber import Subscriber

__all__ = [
    "Campaign",
    "CampaignProgress",
    "MessageLog",
    "DeliveryEvent",
    "FirstEngagement",
    "Subscriber",
]

"""
Delivery statistics aggregation.

Rates are percentages (0-100). Each rate uses the previous funnel stage as
its denominator and is 0 when that denominator is 0:

    delivery_rate    = delivered / total_sent
    open_rate        = opened / delivered
    click_rate       = clicked / opened
    bounce_rate      = bounced / total_sent
    unsubscribe_rate = unsubscribed / total_sent
"""

from typing import Optional

from app.models.campaign import Campaign
from app.schemas.campaign import DeliveryStatistics


def _rate(numerator: int, denominator: int) -> float:
    if not denominator or denominator <= 0:
        return 0.0
    return numerator / denominator * 100


def aggregate(
    total_sent: int,
    delivered: int,
    opened: int,
    clicked: int,
    bounced: int,
    complained: int = 0,
    unsubscribed: int = 0,
) -> DeliveryStatistics:
    """Derive delivery statistics from raw counters."""
    return DeliveryStatistics(
        total_sent=total_sent,
        delivered=delivered,
        opened=opened,
        clicked=clicked,
        bounced=bounced,
        complained=complained,
        unsubscribed=unsubscribed,
        delivery_rate=_rate(delivered, total_sent),
        open_rate=_rate(opened, delivered),
        click_rate=_rate(clicked, opened),
        bounce_rate=_rate(bounced, total_sent),
        unsubscribe_rate=_rate(unsubscribed, total_sent),
    )


def statistics_for(campaign: Optional[Campaign]) -> DeliveryStatistics:
    """Statistics from a campaign's counters; zeros when there is no campaign."""
    if campaign is None:
        return DeliveryStatistics()
    return aggregate(
        total_sent=campaign.sent_count or 0,
        delivered=campaign.delivered_count or 0,
        opened=campaign.opened_count or 0,
        clicked=campaign.clicked_count or 0,
        bounced=campaign.bounced_count or 0,
        complained=campaign.complained_count or 0,
        unsubscribed=campaign.unsubscribed_count or 0,
    )


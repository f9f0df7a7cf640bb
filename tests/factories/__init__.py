"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .campaign import CampaignFactory, SmsCampaignFactory
from .subscriber import SubscriberFactory, UnsubscribedSubscriberFactory

__all__ = [
    "CampaignFactory",
    "SmsCampaignFactory",
    "SubscriberFactory",
    "UnsubscribedSubscriberFactory",
]

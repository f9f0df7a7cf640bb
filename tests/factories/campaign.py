"""
Campaign test factory.

Generates campaign rows ready to be passed to the Campaign model.
"""

import factory
from faker import Faker

fake = Faker()


class CampaignFactory(factory.Factory):
    """
    Factory for generating Campaign test data.

    Usage:
        campaign = Campaign(**CampaignFactory())
        campaign = Campaign(**CampaignFactory(status="scheduled"))
    """

    class Meta:
        model = dict

    tenant_id = "tenant-1"
    name = factory.LazyFunction(lambda: fake.catch_phrase()[:200])
    subject = factory.LazyFunction(lambda: fake.sentence(nb_words=6))
    body = factory.LazyFunction(lambda: f'{fake.paragraph()} <a href="https://example.com/offer">Offer</a>')
    channel = "email"
    status = "draft"


class SmsCampaignFactory(CampaignFactory):
    """Factory for SMS campaigns."""

    channel = "sms"
    subject = None
    body = factory.LazyFunction(lambda: fake.sentence(nb_words=10))

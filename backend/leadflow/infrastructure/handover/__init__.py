"""
Handover Destination Clients
"""
from leadflow.infrastructure.handover.crm import CRMHandoverClient
from leadflow.infrastructure.handover.email_notify import EmailNotifyHandoverClient
from leadflow.infrastructure.handover.factory import HandoverClientFactory
from leadflow.infrastructure.handover.marketplace import MarketplaceHandoverClient, parse_marketplace_response
from leadflow.infrastructure.handover.webhook import WebhookHandoverClient

__all__ = [
    "CRMHandoverClient",
    "EmailNotifyHandoverClient",
    "HandoverClientFactory",
    "MarketplaceHandoverClient",
    "WebhookHandoverClient",
    "parse_marketplace_response",
]

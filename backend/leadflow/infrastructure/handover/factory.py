"""
Handover Destination Factory
"""
from typing import Dict, Optional

import httpx

from leadflow.domain.interfaces.channel import ChannelAgent
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.models.campaign import DestinationType
from leadflow.infrastructure.handover.crm import CRMHandoverClient
from leadflow.infrastructure.handover.email_notify import EmailNotifyHandoverClient
from leadflow.infrastructure.handover.marketplace import MarketplaceHandoverClient
from leadflow.infrastructure.handover.webhook import WebhookHandoverClient


class HandoverClientFactory:

    @staticmethod
    def create_all(
        email_agent: ChannelAgent,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> Dict[DestinationType, HandoverDestinationClient]:
        """One client per destination kind."""
        clients: Dict[DestinationType, HandoverDestinationClient] = {
            DestinationType.CRM: CRMHandoverClient(http_client),
            DestinationType.MARKETPLACE: MarketplaceHandoverClient(http_client, timeout=30.0),
            DestinationType.WEBHOOK: WebhookHandoverClient(http_client),
            DestinationType.EMAIL_NOTIFY: EmailNotifyHandoverClient(email_agent),
        }
        missing = [t.value for t in DestinationType if t not in clients]
        if missing:
            raise ValueError(f"No handover client for: {', '.join(missing)}")
        return clients

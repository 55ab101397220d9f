"""
Webhook Handover Destination
Generic event push, optionally signed with HMAC-SHA256.
"""
import hashlib
import hmac
import json
import logging

from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.infrastructure.handover.base import HttpHandoverClient

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Leadflow-Signature"
EVENT_NAME = "lead_handover"


def sign_body(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookHandoverClient(HttpHandoverClient):

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.WEBHOOK

    def build_event(self, destination: HandoverDestination, package: HandoverPackage) -> dict:
        return {
            "event": EVENT_NAME,
            "lead": self.lead_block(package),
            "handover": {
                "reason": package.reason,
                "timestamp": package.created_at.isoformat(),
                "destination": destination.name or destination.id,
                "conversation_id": package.conversation_id,
                "channel": package.channel,
                "completed_goals": list(package.completed_goals),
                "summary": package.conversation_summary(),
                "notes": list(package.shared_notes),
            },
        }

    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        not_configured = self.check_configured(destination)
        if not_configured:
            return not_configured

        body = json.dumps(self.build_event(destination, package), default=str).encode()
        headers = self.headers_for(destination, bearer=False)
        secret = destination.config.get("secret")
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(secret, body)

        response = await self.post(destination, headers, content=body)
        logger.info(f"Webhook {destination.id} accepted lead {package.lead.id} ({response.status_code})")
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=True,
            response={"status_code": response.status_code, "body": response.text[:500]},
        )

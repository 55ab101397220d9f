"""
Email Notification Handover Destination
Sends a formatted lead summary to the sales team through the email channel.
"""
import logging

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.channel import ChannelAgent
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult

logger = logging.getLogger(__name__)

SUMMARY_TEMPLATE = """New Lead Handover Notification

Lead Details:
- Name: {name}
- Email: {email}
- Phone: {phone}
- Source: {source}
- Campaign: {campaign}
- Qualification Score: {score}
- Completed Goals: {goals}

Handover Reason: {reason}
Timestamp: {timestamp}

Recent conversation ({channel}):
{summary}

Notes:
{notes}

Please follow up with this lead promptly.
"""


class EmailNotifyHandoverClient(HandoverDestinationClient):
    """destination.config["recipients"]: list of addresses to notify"""

    def __init__(self, email_agent: ChannelAgent):
        self._email = email_agent

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.EMAIL_NOTIFY

    @staticmethod
    def render(package: HandoverPackage) -> str:
        lead = package.lead
        return SUMMARY_TEMPLATE.format(
            name=lead.full_name,
            email=lead.email or "-",
            phone=lead.phone or "-",
            source=lead.source,
            campaign=package.campaign_name,
            score=package.qualification_score,
            goals=", ".join(package.completed_goals) or "-",
            reason=package.reason,
            timestamp=package.created_at.isoformat(),
            channel=package.channel or "-",
            summary=package.conversation_summary() or "(no messages)",
            notes="\n".join(f"- {n}" for n in package.shared_notes) or "-",
        )

    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        recipients = destination.config.get("recipients") or []
        if isinstance(recipients, str):
            recipients = [recipients]
        if not recipients:
            return HandoverResult(
                destination=destination.id,
                destination_type=destination.type,
                success=False,
                error="no recipients configured",
                retryable=False,
            )

        subject = f"Lead ready: {package.lead.full_name} ({package.campaign_name})"
        body = self.render(package)
        message_ids = []
        for recipient in recipients:
            receipt = await self._email.send(recipient, body, subject=subject, metadata={"lead_id": package.lead.id})
            if not receipt.success:
                raise DeliveryError(f"notification to {recipient} failed: {receipt.error}")
            message_ids.append(receipt.external_id)

        logger.info(f"Handover notification for lead {package.lead.id} sent to {len(recipients)} recipient(s)")
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=True,
            destination_id=message_ids[0],
            response={"recipients": recipients, "message_ids": message_ids},
        )

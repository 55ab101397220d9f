"""
CRM Handover Destination
Field-mapped record push.
"""
import logging

from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.infrastructure.handover.base import SOURCE_SYSTEM, HttpHandoverClient

logger = logging.getLogger(__name__)


class CRMHandoverClient(HttpHandoverClient):
    """
    Builds the CRM record from destination.field_mapping
    (crm field -> lead field), then adds the standard handover fields.
    """

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.CRM

    @staticmethod
    def build_record(destination: HandoverDestination, package: HandoverPackage) -> dict:
        lead = package.lead
        record = {}
        for crm_field, lead_field in destination.field_mapping.items():
            value = lead.get_field(lead_field)
            record[crm_field] = value if value is not None else ""

        record["handover_reason"] = package.reason
        record["qualification_score"] = package.qualification_score
        record["source_system"] = SOURCE_SYSTEM
        record["created_at"] = package.created_at.isoformat()
        if package.completed_goals:
            record["completed_goals"] = list(package.completed_goals)
        return record

    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        not_configured = self.check_configured(destination)
        if not_configured:
            return not_configured

        record = self.build_record(destination, package)
        response = await self.post(destination, self.headers_for(destination), json_body=record)

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"body": response.text[:500]}
        remote_id = None
        if isinstance(body, dict):
            remote_id = body.get("id") or body.get("lead_id")
        logger.info(f"CRM {destination.id} accepted lead {package.lead.id} as {remote_id}")
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=True,
            destination_id=str(remote_id) if remote_id is not None else None,
            response=body if isinstance(body, dict) else {"body": body},
        )

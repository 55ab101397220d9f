"""
Shared plumbing for HTTP handover destinations
"""
import logging
from typing import Any, Dict, Optional

import httpx

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.models.campaign import HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.infrastructure.http_utils import OwnedClient, raise_for_delivery

logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "leadflow"


class HttpHandoverClient(HandoverDestinationClient):
    """
    Base for destinations reached over HTTP.

    destination.config keys:
    - endpoint: URL to POST to (required)
    - api_key: sent as a Bearer token when present
    - headers: extra request headers
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._http = OwnedClient(http_client, timeout)

    def rejected(self, destination: HandoverDestination, error: str) -> HandoverResult:
        """A failure that will not succeed on retry."""
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=False,
            error=error,
            retryable=False,
        )

    def headers_for(self, destination: HandoverDestination, bearer: bool = True) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = destination.config.get("api_key")
        if bearer and api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        headers.update(destination.config.get("headers") or {})
        return headers

    async def post(
        self,
        destination: HandoverDestination,
        headers: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        form: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """POST to the destination endpoint; transport and HTTP errors raise DeliveryError."""
        endpoint = destination.config.get("endpoint")
        try:
            response = await self._http.get().post(
                endpoint,
                headers=headers,
                json=json_body,
                content=content,
                data=form,
            )
        except httpx.TimeoutException as e:
            logger.error(f"{destination.type.value} destination {destination.id} timed out")
            raise DeliveryError(f"{destination.id} timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"{destination.type.value} destination {destination.id} request failed: {e}")
            raise DeliveryError(f"{destination.id} request failed: {e}") from e

        raise_for_delivery(response, destination.id)
        return response

    def check_configured(self, destination: HandoverDestination) -> Optional[HandoverResult]:
        if not destination.config.get("endpoint"):
            return self.rejected(destination, "endpoint not configured")
        return None

    @staticmethod
    def lead_block(package: HandoverPackage) -> Dict[str, Any]:
        lead = package.lead
        return {
            "id": lead.id,
            "name": lead.full_name if (lead.first_name or lead.last_name) else "Unknown",
            "first_name": lead.first_name or "",
            "last_name": lead.last_name or "",
            "email": lead.email,
            "phone": lead.phone,
            "source": lead.source,
            "campaign": package.campaign_name,
            "qualification_score": package.qualification_score,
            "metadata": lead.metadata,
        }

    async def close(self) -> None:
        await self._http.close()

"""
Marketplace Handover Destination
Fixed-schema lead post; the marketplace answers with a match decision,
the buyer and a price, as XML or JSON.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree

from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.infrastructure.handover.base import HttpHandoverClient

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_FIELDS = ["email", "phone"]
TEST_ZIP = "99999"

_XML_DECLARATION = re.compile(r"^<\?xml[^>]*\?>")


@dataclass
class MarketplaceResponse:
    matched: bool
    buyer_id: Optional[str] = None
    price: Optional[float] = None


def _to_price(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def parse_marketplace_response(text: str, content_type: str = "") -> MarketplaceResponse:
    """
    Parse XML (<status>matched</status>...) or JSON ({"status": "matched"...}).

    Raises ElementTree.ParseError or ValueError on a malformed body.
    """
    stripped = text.strip()
    if "json" in content_type or stripped.startswith("{"):
        data = json.loads(stripped or "{}")
        if not isinstance(data, dict):
            raise ValueError("marketplace JSON response is not an object")
        status = str(data.get("status", "")).lower()
        matched = bool(data.get("matched")) or status == "matched"
        buyer = data.get("buyer_id") or data.get("buyerId")
        return MarketplaceResponse(
            matched=matched,
            buyer_id=str(buyer) if buyer else None,
            price=_to_price(data.get("price")),
        )

    # Responses may carry several top-level elements, so parse inside an envelope
    root = ElementTree.fromstring(f"<envelope>{_XML_DECLARATION.sub('', stripped)}</envelope>")

    def tag(name: str) -> Optional[str]:
        value = root.findtext(f".//{name}")
        return value.strip() if value else None

    return MarketplaceResponse(
        matched=(tag("status") or "").lower() == "matched",
        buyer_id=tag("buyer_id"),
        price=_to_price(tag("price")),
    )


class MarketplaceHandoverClient(HttpHandoverClient):
    """
    destination.config keys (besides endpoint/api_key/headers):
    - required_fields: lead fields that must be present before posting
    - test_mode: mark every lead as a test lead
    """

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.MARKETPLACE

    @staticmethod
    def is_test_lead(destination: HandoverDestination, package: HandoverPackage) -> bool:
        metadata = package.lead.metadata
        return (
            bool(destination.config.get("test_mode"))
            or str(metadata.get("Test_Lead", "")) == "1"
            or str(metadata.get("zip", "")) == TEST_ZIP
        )

    @staticmethod
    def missing_fields(destination: HandoverDestination, package: HandoverPackage) -> List[str]:
        required = destination.config.get("required_fields", DEFAULT_REQUIRED_FIELDS)
        return [name for name in required if not package.lead.has_field(name)]

    def build_post(self, destination: HandoverDestination, package: HandoverPackage) -> Dict[str, str]:
        lead = package.lead
        post: Dict[str, str] = {
            key: str(value) for key, value in lead.metadata.items()
            if isinstance(value, (str, int, float)) and not isinstance(value, bool)
        }
        post.update({
            "src": lead.source,
            "name": lead.full_name,
            "email": lead.email or "",
            "phone": lead.phone or "",
            "zip": str(lead.metadata.get("zip", "")),
            "qualification_score": str(package.qualification_score),
        })
        for field_name, lead_field in destination.field_mapping.items():
            value = lead.get_field(lead_field)
            post[field_name] = "" if value is None else str(value)
        if destination.config.get("api_key"):
            post["api_key"] = destination.config["api_key"]
        if self.is_test_lead(destination, package):
            post["Test_Lead"] = "1"
        else:
            post.pop("Test_Lead", None)
        return post

    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        not_configured = self.check_configured(destination)
        if not_configured:
            return not_configured

        missing = self.missing_fields(destination, package)
        if missing:
            logger.warning(f"Lead {package.lead.id} not ready for marketplace {destination.id}: missing {missing}")
            return self.rejected(destination, f"missing required fields: {', '.join(missing)}")

        headers = {"Accept": "application/xml, application/json"}
        headers.update(destination.config.get("headers") or {})
        response = await self.post(destination, headers, form=self.build_post(destination, package))

        try:
            parsed = parse_marketplace_response(response.text, response.headers.get("content-type", ""))
        except (ElementTree.ParseError, ValueError) as e:
            logger.warning(f"Marketplace {destination.id} sent an unreadable response for lead {package.lead.id}: {e}")
            return self.rejected(destination, f"unreadable marketplace response: {e}")

        is_test = self.is_test_lead(destination, package)
        details = {"matched": parsed.matched, "buyer_id": parsed.buyer_id, "price": parsed.price, "test_lead": is_test}

        if parsed.matched and parsed.buyer_id:
            logger.info(f"Marketplace matched lead {package.lead.id} to buyer {parsed.buyer_id} for {parsed.price or 0}")
            return HandoverResult(
                destination=destination.id,
                destination_type=destination.type,
                success=True,
                destination_id=parsed.buyer_id,
                response=details,
            )

        logger.info(f"Marketplace found no buyer for lead {package.lead.id}")
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=False,
            error="no matching buyer",
            retryable=False,
            response=details,
        )

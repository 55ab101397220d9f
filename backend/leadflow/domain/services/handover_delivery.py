"""
Handover Delivery
Independent fan-out of a handover package to every configured
destination. Each attempt goes through the destination kind's breaker
and is recorded as its own Communication; one destination failing
never blocks another.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from leadflow.core.exceptions import DependencyError, DeliveryError
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.communication import (
    HANDOVER_CHANNEL_PREFIX,
    Communication,
    DeliveryStatus,
    Direction,
)
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.domain.services.circuit_breaker import BreakerRegistry

logger = logging.getLogger(__name__)


def handover_channel(destination_type: DestinationType) -> str:
    return f"{HANDOVER_CHANNEL_PREFIX}{destination_type.value}"


class HandoverDeliveryService:

    def __init__(
        self,
        pipeline_store: PipelineStore,
        clients: Dict[DestinationType, HandoverDestinationClient],
        breakers: BreakerRegistry
    ):
        self._store = pipeline_store
        self._clients = clients
        self._breakers = breakers

    async def find_success(self, lead_id: str, destination: HandoverDestination) -> Optional[Communication]:
        """Earlier successful attempt for (lead, destination), if any."""
        for communication in await self._store.list_communications(lead_id, handover_channel(destination.type)):
            if (
                communication.metadata.get("destination") == destination.id
                and communication.status == DeliveryStatus.SENT
            ):
                return communication
        return None

    async def deliver_one(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        """
        Attempt delivery to one destination.

        Success is final: a destination that already accepted this lead
        is not contacted again. Failures are returned, never raised.
        """
        lead_id = package.lead.id
        previous = await self.find_success(lead_id, destination)
        if previous is not None:
            logger.info(f"Handover of lead {lead_id} to {destination.id} already delivered, skipping")
            return HandoverResult(
                destination=destination.id,
                destination_type=destination.type,
                success=True,
                destination_id=previous.external_id,
                response={"deduplicated": True},
            )

        client = self._clients.get(destination.type)
        if client is None:
            result = HandoverResult(
                destination=destination.id,
                destination_type=destination.type,
                success=False,
                error=f"no client registered for {destination.type.value}",
                retryable=False,
            )
        else:
            breaker = self._breakers.get(f"handover.{destination.type.value}")
            try:
                result = await breaker.call(
                    lambda: client.deliver(destination, package),
                    fallback=lambda: HandoverResult(
                        destination=destination.id,
                        destination_type=destination.type,
                        success=False,
                        error=f"circuit_open: handover.{destination.type.value}",
                        simulated=True,
                    ),
                )
            except DependencyError as e:
                retryable = True
                if isinstance(e.__cause__, DeliveryError):
                    retryable = e.__cause__.retryable
                result = HandoverResult(
                    destination=destination.id,
                    destination_type=destination.type,
                    success=False,
                    error=e.message,
                    retryable=retryable,
                )

        await self._record_attempt(destination, package, result)

        if result.success:
            logger.info(f"Handover of lead {lead_id} delivered to {destination.id} ({result.destination_id})")
        else:
            logger.warning(f"Handover of lead {lead_id} to {destination.id} failed: {result.error}")
        return result

    async def deliver_all(self, destinations: List[HandoverDestination], package: HandoverPackage) -> List[HandoverResult]:
        """Deliver concurrently; results are in destination order."""
        outcomes = await asyncio.gather(
            *(self.deliver_one(destination, package) for destination in destinations),
            return_exceptions=True,
        )
        results = []
        for destination, outcome in zip(destinations, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected handover error for {destination.id}: {outcome}", exc_info=outcome)
                outcome = HandoverResult(
                    destination=destination.id,
                    destination_type=destination.type,
                    success=False,
                    error=str(outcome),
                )
            results.append(outcome)
        return results

    async def _record_attempt(self, destination: HandoverDestination, package: HandoverPackage, result: HandoverResult) -> None:
        attempts = len([
            c for c in await self._store.list_communications(package.lead.id, handover_channel(destination.type))
            if c.metadata.get("destination") == destination.id
        ])
        await self._store.record_communication(Communication(
            lead_id=package.lead.id,
            channel=handover_channel(destination.type),
            direction=Direction.OUTBOUND,
            content=package.reason,
            status=DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
            external_id=result.destination_id,
            conversation_id=package.conversation_id,
            metadata={
                "handover": True,
                "destination": destination.id,
                "destination_type": destination.type.value,
                "attempt": attempts + 1,
                "error": result.error,
                "simulated": result.simulated,
                "retryable": result.retryable,
            },
        ))

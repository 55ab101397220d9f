"""
Handover Destination Interface
"""
from abc import ABC, abstractmethod

from leadflow.domain.models.campaign import DestinationType, HandoverDestination
from leadflow.domain.models.handover import HandoverPackage, HandoverResult


class HandoverDestinationClient(ABC):
    """Pushes a handover package to one kind of downstream system"""

    @property
    @abstractmethod
    def destination_type(self) -> DestinationType:
        pass

    @abstractmethod
    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        """
        Deliver one package.

        Transport failures and non-success HTTP statuses raise
        DeliveryError. A well-formed rejection is returned as
        HandoverResult(success=False, retryable=False).
        """
        pass

    async def close(self) -> None:
        pass

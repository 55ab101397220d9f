"""
Agent Feedback Interface
Solicited by the coordination hub before a coordinated decision is acted on.
"""
from abc import ABC, abstractmethod

from leadflow.domain.models.agent_decision import AgentDecision
from leadflow.domain.models.coordination import AgentFeedback


class FeedbackProvider(ABC):

    @abstractmethod
    async def solicit(self, agent_id: str, decision: AgentDecision) -> AgentFeedback:
        """Return {agrees, confidence} from one agent for a proposed decision."""
        pass

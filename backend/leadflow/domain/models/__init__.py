"""Domain models"""

# Leads and campaigns
from .lead import (
    LeadStatus,
    Channel,
    Lead,
)

from .campaign import (
    CoordinationStrategy,
    DestinationType,
    CampaignGoal,
    QualificationCriteria,
    ChannelPreferences,
    HandoverCriteria,
    AgentAssignment,
    TemplateStep,
    HandoverDestination,
    Campaign,
)

# Conversations
from .conversation import (
    ConversationMode,
    MessageRole,
    Message,
    CrossChannelContext,
    Conversation,
)

# Audit records
from .agent_decision import (
    DecisionAction,
    DecisionPriority,
    AgentDecision,
    RoutingAdvice,
)

from .communication import (
    Direction,
    DeliveryStatus,
    Communication,
)

# Queue
from .job import (
    JobType,
    JobStatus,
    Job,
)

# Coordination and handover
from .coordination import (
    MessageCoordination,
    CoordinationSchedule,
    AgentFeedback,
    ConsensusDecision,
    AgentMessageType,
    AgentMessage,
    GoalProgress,
)

from .handover import (
    HandoverCriterion,
    HandoverEvaluation,
    HandoverPackage,
    HandoverResult,
)

"""
Coordination Store
Durable coordination state keyed by (campaign, lead), plus per-agent
mailboxes.

Redis keys:
- leadflow:coord:{campaign_id}:{lead_id}:schedule   - schedule JSON
- leadflow:coord:{campaign_id}:{lead_id}:goals      - hash goal -> progress
- leadflow:coord:{campaign_id}:{lead_id}:completed  - completion marker
- leadflow:coord:lead:{lead_id}:last_outbound       - zset channel -> epoch seconds
- leadflow:mailbox:{agent_id}                       - list of AgentMessage JSON

Without a Redis client the store runs in memory-only mode.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from leadflow.domain.models.coordination import AgentMessage, CoordinationSchedule
from leadflow.domain.models.lead import Channel
from leadflow.utils.time_utils import parse_timestamp

logger = logging.getLogger(__name__)


class CoordinationStore:

    SCHEDULE_KEY = "leadflow:coord:{campaign_id}:{lead_id}:schedule"
    GOALS_KEY = "leadflow:coord:{campaign_id}:{lead_id}:goals"
    COMPLETED_KEY = "leadflow:coord:{campaign_id}:{lead_id}:completed"
    LAST_OUTBOUND_KEY = "leadflow:coord:lead:{lead_id}:last_outbound"
    MAILBOX_KEY = "leadflow:mailbox:{agent_id}"

    MAILBOX_MAX_LENGTH = 500

    def __init__(self, redis_client=None):
        self._redis = redis_client
        if self._redis is None:
            logger.warning("CoordinationStore running in memory-only mode")

        self._lock = asyncio.Lock()
        self._schedules: Dict[str, str] = {}
        self._goals: Dict[str, Dict[str, float]] = {}
        self._completed: set = set()
        self._last_outbound: Dict[str, Dict[str, str]] = {}
        self._mailboxes: Dict[str, List[str]] = {}

    # Schedules

    async def save_schedule(self, schedule: CoordinationSchedule) -> None:
        key = self.SCHEDULE_KEY.format(campaign_id=schedule.campaign_id, lead_id=schedule.lead_id)
        data = schedule.model_dump_json()
        if self._redis is None:
            self._schedules[key] = data
            return
        await self._redis.set(key, data)

    async def get_schedule(self, campaign_id: str, lead_id: str) -> Optional[CoordinationSchedule]:
        key = self.SCHEDULE_KEY.format(campaign_id=campaign_id, lead_id=lead_id)
        if self._redis is None:
            data = self._schedules.get(key)
        else:
            data = await self._redis.get(key)
        return CoordinationSchedule.model_validate_json(data) if data else None

    # Goal progress

    async def increment_goal(self, campaign_id: str, lead_id: str, goal: str, amount: float) -> Dict[str, float]:
        """Add amount to one goal and return the merged progress map."""
        key = self.GOALS_KEY.format(campaign_id=campaign_id, lead_id=lead_id)
        if self._redis is None:
            async with self._lock:
                progress = self._goals.setdefault(key, {})
                progress[goal] = progress.get(goal, 0.0) + amount
                return dict(progress)

        await self._redis.hincrbyfloat(key, goal, amount)
        return await self.get_goal_progress(campaign_id, lead_id)

    async def get_goal_progress(self, campaign_id: str, lead_id: str) -> Dict[str, float]:
        key = self.GOALS_KEY.format(campaign_id=campaign_id, lead_id=lead_id)
        if self._redis is None:
            return dict(self._goals.get(key, {}))
        raw = await self._redis.hgetall(key)
        return {name: float(value) for name, value in (raw or {}).items()}

    async def mark_completed(self, campaign_id: str, lead_id: str) -> bool:
        """Set the completion marker; True only for the first caller."""
        key = self.COMPLETED_KEY.format(campaign_id=campaign_id, lead_id=lead_id)
        if self._redis is None:
            async with self._lock:
                if key in self._completed:
                    return False
                self._completed.add(key)
                return True
        return bool(await self._redis.set(key, "1", nx=True))

    # Outbound spacing

    async def get_last_outbound(self, lead_id: str, channel: Channel) -> Optional[datetime]:
        key = self.LAST_OUTBOUND_KEY.format(lead_id=lead_id)
        if self._redis is None:
            value = self._last_outbound.get(key, {}).get(channel.value)
            return parse_timestamp(value) if value else None
        score = await self._redis.zscore(key, channel.value)
        return datetime.fromtimestamp(score, tz=timezone.utc) if score is not None else None

    async def set_last_outbound(self, lead_id: str, channel: Channel, at: datetime) -> None:
        """Record an outbound time, keeping the later one when writers race."""
        key = self.LAST_OUTBOUND_KEY.format(lead_id=lead_id)
        if self._redis is None:
            async with self._lock:
                current = self._last_outbound.setdefault(key, {}).get(channel.value)
                if current is None or parse_timestamp(current) < at:
                    self._last_outbound[key][channel.value] = at.isoformat()
            return
        # GT only ever moves the score forward
        await self._redis.zadd(key, {channel.value: at.timestamp()}, gt=True)

    # Mailboxes

    async def push_message(self, message: AgentMessage) -> None:
        key = self.MAILBOX_KEY.format(agent_id=message.to_agent)
        data = message.model_dump_json()
        if self._redis is None:
            async with self._lock:
                mailbox = self._mailboxes.setdefault(key, [])
                mailbox.append(data)
                del mailbox[:-self.MAILBOX_MAX_LENGTH]
            return
        await self._redis.rpush(key, data)
        await self._redis.ltrim(key, -self.MAILBOX_MAX_LENGTH, -1)

    async def drain_messages(self, agent_id: str, limit: int = 100) -> List[AgentMessage]:
        """Pop up to limit messages, oldest first."""
        key = self.MAILBOX_KEY.format(agent_id=agent_id)
        if self._redis is None:
            async with self._lock:
                mailbox = self._mailboxes.get(key, [])
                raw, self._mailboxes[key] = mailbox[:limit], mailbox[limit:]
        else:
            raw = []
            for _ in range(limit):
                item = await self._redis.lpop(key)
                if item is None:
                    break
                raw.append(item)
        return [AgentMessage.model_validate_json(item) for item in raw]

    async def close(self) -> None:
        """The Redis client belongs to whoever created it; only local state is dropped."""
        self._mailboxes.clear()
        self._schedules.clear()

"""
Conversation Analysis
Keyword-based qualification signals extracted from lead messages.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from leadflow.domain.models.campaign import Campaign, CampaignGoal
from leadflow.domain.models.conversation import Message, MessageRole

logger = logging.getLogger(__name__)


QUALIFICATION_KEYWORDS: Dict[str, List[str]] = {
    "budget_confirmed": ["budget", "afford", "payment", "financing", "loan"],
    "timeline_established": ["when", "soon", "urgently", "asap", "timeline"],
    "decision_maker": ["decision", "decide", "authorize", "approve"],
    "interest_level": ["interested", "love", "perfect", "exactly", "want"],
    "contact_info": ["phone", "email", "contact", "reach", "call"],
}

URGENCY_KEYWORDS = {
    "high": ["asap", "urgent", "urgently", "immediately", "today", "right away"],
    "medium": ["soon", "this week", "next week", "this month"],
}

POSITIVE_WORDS = ["great", "thanks", "thank you", "interested", "love", "perfect", "yes", "sounds good"]
NEGATIVE_WORDS = ["not interested", "no thanks", "expensive", "annoying", "spam", "never", "bad"]

OPT_OUT_PHRASES = ["stop", "unsubscribe", "not interested", "remove me", "opt out", "opt-out", "do not contact", "don't contact"]


@dataclass
class ConversationAnalysis:
    qualification_score: int
    matched_categories: List[str] = field(default_factory=list)
    keyword_matches: Dict[str, List[str]] = field(default_factory=dict)
    urgency: str = "low"
    sentiment: float = 0.0


def _contains(text: str, keyword: str) -> bool:
    """Word-boundary match for single words, substring match for phrases."""
    keyword = keyword.lower()
    if " " in keyword or "-" in keyword or "'" in keyword:
        return keyword in text
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


class ConversationAnalyzer:
    """
    Scores a conversation from lead-authored messages.

    Each matched qualification category is worth points_per_category,
    each completed campaign goal points_per_goal; the total is capped at 100.
    """

    def __init__(self, points_per_category: int = 20, points_per_goal: int = 10):
        self.points_per_category = points_per_category
        self.points_per_goal = points_per_goal

    def analyze(self, messages: Iterable[Message], completed_goals: Optional[List[str]] = None) -> ConversationAnalysis:
        lead_text = " ".join(
            m.content.lower() for m in messages if m.role == MessageRole.LEAD
        )

        keyword_matches: Dict[str, List[str]] = {}
        for category, keywords in QUALIFICATION_KEYWORDS.items():
            hits = [kw for kw in keywords if _contains(lead_text, kw)]
            if hits:
                keyword_matches[category] = hits

        matched = list(keyword_matches.keys())
        score = len(matched) * self.points_per_category
        score += len(completed_goals or []) * self.points_per_goal

        return ConversationAnalysis(
            qualification_score=min(score, 100),
            matched_categories=matched,
            keyword_matches=keyword_matches,
            urgency=self.detect_urgency(lead_text),
            sentiment=self.sentiment(lead_text),
        )

    def detect_urgency(self, text: str) -> str:
        text = text.lower()
        for level in ("high", "medium"):
            if any(_contains(text, kw) for kw in URGENCY_KEYWORDS[level]):
                return level
        return "low"

    def sentiment(self, text: str) -> float:
        """Crude polarity in [-1, 1]"""
        text = text.lower()
        positive = sum(1 for w in POSITIVE_WORDS if _contains(text, w))
        negative = sum(1 for w in NEGATIVE_WORDS if _contains(text, w))
        total = positive + negative
        if total == 0:
            return 0.0
        return round((positive - negative) / total, 2)

    def detect_goal_matches(self, goals: Iterable[CampaignGoal], content: str) -> List[str]:
        """
        Goals advanced by one inbound message.

        A goal matches on its own keywords, or, when it declares none,
        on the qualification category of the same name.
        """
        text = content.lower()
        matched = []
        for goal in goals:
            keywords = goal.keywords or QUALIFICATION_KEYWORDS.get(goal.name, [])
            if any(_contains(text, kw) for kw in keywords):
                matched.append(goal.name)
        return matched

    def is_opt_out(self, content: str) -> bool:
        text = content.lower()
        return any(_contains(text, phrase) for phrase in OPT_OUT_PHRASES)

    def score_for(self, campaign: Campaign, messages: Iterable[Message], completed_goals: List[str]) -> int:
        known = {g.name for g in campaign.goals}
        return self.analyze(messages, [g for g in completed_goals if g in known]).qualification_score

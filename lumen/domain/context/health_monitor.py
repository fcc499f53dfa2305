"""Spots unhealthy conversation patterns so the relay can speak up about them."""

import re
from typing import List, Optional

from pydantic import BaseModel

from .memory.runtime_memory import Interaction

FRUSTRATION_PATTERN = re.compile(r"\b(stop|too many|excessive|spam|enough|reduce|fewer|less)\b", re.IGNORECASE)


class HealthIssue(BaseModel):
    type: str
    severity: str
    message: str
    detail: str = ""


class ConversationHealthMonitor:
    """Heuristics over the most recent interactions of one identity"""

    def __init__(self, window: int = 10, rapid_gap_s: float = 15.0, frustration_threshold: int = 2):
        self.window = window
        self.rapid_gap_s = rapid_gap_s
        self.frustration_threshold = frustration_threshold

    def analyze(self, interactions: List[Interaction]) -> List[HealthIssue]:
        if len(interactions) < 3:
            return []

        recent = interactions[-self.window:]
        issues: List[HealthIssue] = []

        # The first BASE turn of a run carries the operator's own words
        user_queries = [
            i.request.get("query", "") for i in recent
            if i.request.get("stage") == "base" and i.request.get("iteration") == 1
        ]
        frustrated = [q for q in user_queries if FRUSTRATION_PATTERN.search(q)]
        if len(frustrated) >= self.frustration_threshold:
            issues.append(HealthIssue(
                type="USER_FRUSTRATION",
                severity="HIGH",
                message=f"User expressed frustration {len(frustrated)} times in the last {len(recent)} interactions",
                detail=" | ".join(frustrated),
            ))

        gaps = [
            (b.timestamp - a.timestamp).total_seconds()
            for a, b in zip(recent, recent[1:])
        ]
        if gaps:
            average_gap = sum(gaps) / len(gaps)
            if average_gap < self.rapid_gap_s:
                issues.append(HealthIssue(
                    type="MESSAGE_VOLUME",
                    severity="MEDIUM",
                    message=f"Rapid interaction rate ({average_gap:.1f}s average between interactions)",
                ))

        responses = [i.response.get("response") for i in recent[-2:] if i.response.get("choice") == "response"]
        if len(interactions) >= 4 and len(responses) == 2 and responses[0] and responses[0] == responses[1]:
            issues.append(HealthIssue(
                type="RESPONSE_LOOP",
                severity="HIGH",
                message="Identical responses generated back to back",
                detail="The agent may be stuck in a loop",
            ))

        return issues

    @staticmethod
    def reflection_message(issues: List[HealthIssue]) -> Optional[str]:
        """One sentence for the operator, or None when nothing is worth saying"""
        if not issues:
            return None

        by_type = {issue.type: issue for issue in issues}

        if "USER_FRUSTRATION" in by_type:
            return ("I notice you've asked me to cut down a few times. "
                    "Should I reply once per message and skip intermediate updates?")
        if "RESPONSE_LOOP" in by_type:
            return "I'm repeating the same response. Let me try a different approach."
        if all(issue.severity != "HIGH" for issue in issues):
            return None
        return "I've noticed some patterns in our conversation that might be worth addressing."

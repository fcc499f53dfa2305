from typing import List, Optional
import structlog

from lumen.domain.context.context_manager import ContextProvider
from lumen.domain.errors import ReasoningError
from lumen.domain.models.agent_state import InboundMessage, LandscapeResult, RequestFulfilledResult
from lumen.domain.orchestration.core.prompts import LANDSCAPE_CONTEXT, fulfillment_prompt, landscape_prompt
from lumen.domain.orchestration.core.reasoning import ReasoningService, structured_query

logger = structlog.get_logger(__name__)


class FulfillmentEvaluator:
    """Asks the reasoning service whether a finished run actually did what was asked"""

    def __init__(self, reasoning: ReasoningService, context_provider: ContextProvider):
        self.reasoning = reasoning
        self.context_provider = context_provider

    async def evaluate(self, identity: str, request: str) -> bool:
        context = await self.context_provider.snapshot(identity)
        result = await structured_query(
            self.reasoning,
            fulfillment_prompt(request),
            RequestFulfilledResult,
            context=context,
            stage="request_fulfilled",
        )
        return result.request_fulfilled


class LandscapeAnalyzer:
    """Batch triage for the poller: one reasoning call over the whole batch"""

    def __init__(self, reasoning: ReasoningService):
        self.reasoning = reasoning

    async def __call__(self, batch: List[InboundMessage]) -> Optional[LandscapeResult]:
        if not batch:
            return None
        try:
            return await structured_query(
                self.reasoning,
                landscape_prompt(batch),
                LandscapeResult,
                context=LANDSCAPE_CONTEXT,
                stage="landscape",
            )
        except ReasoningError as e:
            # Triage is advisory; the batch is still handled without it
            logger.warning("Landscape analysis failed", error=str(e), messages=len(batch))
            return None

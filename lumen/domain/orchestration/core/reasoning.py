from abc import ABC, abstractmethod
from typing import Any, Dict, Type, TypeVar
import time

from pydantic import BaseModel, ValidationError
import structlog

from lumen.domain.errors import ReasoningError, SchemaViolation, TransportError
from lumen.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class ReasoningService(ABC):
    """External reasoning call: prompt and context in, schema-shaped JSON out.

    Implementations raise ``TransportError`` when the service cannot be reached
    and ``SchemaViolation`` when the reply is not JSON. No retries here.
    """

    @abstractmethod
    async def query(self, prompt: str, schema: Type[BaseModel], context: str = "") -> Dict[str, Any]:
        """Return the raw structured result for ``prompt``"""


async def structured_query(
    service: ReasoningService,
    prompt: str,
    schema: Type[T],
    context: str = "",
    stage: str = "",
) -> T:
    """Query ``service`` and parse the result into ``schema``"""

    started = time.perf_counter()
    try:
        raw = await service.query(prompt, schema=schema, context=context)
    except ReasoningError:
        raise
    except Exception as e:
        raise TransportError(f"Reasoning call failed: {e}", stage=stage) from e
    finally:
        metrics.record_latency("reasoning", (time.perf_counter() - started) * 1000, tags={"stage": stage})

    if not isinstance(raw, dict):
        raise SchemaViolation(f"Expected a JSON object, got {type(raw).__name__}", stage=stage)

    try:
        return schema.model_validate(raw)
    except ValidationError as e:
        logger.warning("Reasoning output rejected", stage=stage, errors=e.error_count())
        raise SchemaViolation(
            f"{stage or 'reasoning'} output does not match {schema.__name__}",
            stage=stage,
            errors=e.errors(include_url=False),
        ) from e

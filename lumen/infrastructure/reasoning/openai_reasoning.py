from typing import Any, Dict, Optional, Type
import json

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel
import structlog

from lumen.domain.errors import SchemaViolation, TransportError
from lumen.domain.orchestration.core.reasoning import ReasoningService
from lumen.infrastructure.config.settings import Settings
from lumen.infrastructure.observability.langfuse_tracing import trace_stage

logger = structlog.get_logger(__name__)


class OpenAIReasoningService(ReasoningService):
    """Structured-output chat completions: the stage schema goes out as a JSON schema"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        temperature: float = 0.2,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature

        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "base_url": base_url}
            if timeout_s is not None:
                client_kwargs["timeout"] = float(timeout_s)
            # No retries: a failed call aborts the run
            client = AsyncOpenAI(max_retries=0, **client_kwargs)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIReasoningService":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout_s=settings.openai_timeout_s,
        )

    @trace_stage("reasoning_query")
    async def query(self, prompt: str, schema: Type[BaseModel], context: str = "") -> Dict[str, Any]:
        messages = []
        if context:
            messages.append({"role": "system", "content": context})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema.__name__,
                        "schema": schema.model_json_schema(by_alias=True),
                        "strict": False,
                    },
                },
            )
        except openai.APIError as e:
            logger.error("Reasoning request failed", model=self.model, error=str(e))
            raise TransportError(f"OpenAI request failed: {e}") from e

        content = response.choices[0].message.content or ""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise SchemaViolation(f"Reasoning reply is not valid JSON: {e.msg}") from e

    @property
    def sdk_client(self) -> AsyncOpenAI:
        return self._client

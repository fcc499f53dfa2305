from abc import ABC, abstractmethod
from typing import Dict, Any, Type
from datetime import datetime, timezone

from pydantic import BaseModel

from lumen.domain.orchestration.core.reasoning import ReasoningService, structured_query


class BaseCapability(ABC):
    """Named, schema-typed operation the orchestration loop can delegate to"""

    def __init__(self, name: str, description: str, output_schema: Type[BaseModel]):
        self.name = name
        self.description = description
        self.output_schema = output_schema
        self.created_at = datetime.now(timezone.utc)
        self.last_active = datetime.now(timezone.utc)

    @abstractmethod
    async def run(self, query: str, context: str, reasoning: ReasoningService) -> Dict[str, Any]:
        """Execute the capability and return its structured output"""

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = datetime.now(timezone.utc)

    def get_info(self) -> Dict[str, Any]:
        """Get capability information"""
        return {
            "id": self.name,
            "description": self.description,
            "schema": self.output_schema.model_json_schema(by_alias=True),
            "last_active": self.last_active.isoformat()
        }


class SchemaCapability(BaseCapability):
    """Capability fully described by its output schema; the reasoning service does the work"""

    async def run(self, query: str, context: str, reasoning: ReasoningService) -> Dict[str, Any]:
        self.update_activity()
        result = await structured_query(
            reasoning, query, self.output_schema, context=context, stage=f"capability:{self.name}"
        )
        return result.model_dump(by_alias=True)

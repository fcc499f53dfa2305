from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional
import structlog

from lumen.domain.errors import RegistryFrozenError
from lumen.domain.orchestration.subagent.base_subagent import BaseCapability

logger = structlog.get_logger(__name__)


class CapabilityRegistry:
    """Static catalog of capabilities, frozen before the first run"""

    def __init__(self, capabilities: Optional[Iterable[BaseCapability]] = None):
        self._capabilities: Dict[str, BaseCapability] = {}
        self._frozen = False

        for capability in capabilities or []:
            self.register_tool(capability)

    def register_tool(self, capability: BaseCapability):
        """Register a new capability"""

        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{capability.name}': catalog is frozen")
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' is already registered")

        self._capabilities[capability.name] = capability
        logger.debug("Capability registered", capability_id=capability.name)

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def capabilities(self) -> Mapping[str, BaseCapability]:
        return MappingProxyType(self._capabilities)

    def get(self, capability_id: Optional[str]) -> Optional[BaseCapability]:
        """Look up a capability; None for unknown or empty ids"""

        if not capability_id:
            return None
        return self._capabilities.get(capability_id)

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def catalog(self) -> List[Dict[str, str]]:
        """Id and description of every capability"""

        return [
            {"id": capability.name, "description": capability.description}
            for capability in self._capabilities.values()
        ]

    def describe(self) -> str:
        """Catalog as a prompt-ready list"""

        return "\n".join(f"- {entry['id']}: {entry['description']}" for entry in self.catalog())

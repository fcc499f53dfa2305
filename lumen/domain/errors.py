from typing import Any, Dict, List, Optional


class LumenError(Exception):
    """Base class for all relay errors"""


class ReasoningError(LumenError):
    """The reasoning service could not produce a usable result"""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class SchemaViolation(ReasoningError):
    """Reasoning output did not conform to the stage schema"""

    def __init__(self, message: str, stage: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, stage=stage)
        self.errors = errors or []


class TransportError(ReasoningError):
    """The reasoning service was unreachable or returned a transport-level failure"""


class UnredactedSecretError(LumenError):
    """Sensitive-looking text matched no redaction rule while running fail-closed"""

    def __init__(self, keywords: List[str]):
        super().__init__(
            "Message appears to contain unprotected sensitive data: " + ", ".join(sorted(set(keywords)))
        )
        self.keywords = keywords


class RegistryFrozenError(LumenError):
    """Capability catalog can no longer be modified"""


class CommandValidationError(LumenError):
    """Command was rejected by the execution guard"""

    def __init__(self, message: str, pattern: Optional[str] = None):
        super().__init__(message)
        self.pattern = pattern

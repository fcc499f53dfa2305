import re
from typing import Dict, List, Literal, Optional, Sequence, Set, Tuple
from dataclasses import dataclass
from pydantic import BaseModel
import structlog

from lumen.domain.errors import UnredactedSecretError
from lumen.domain.security.redaction_rules import (
    DEFAULT_RULES, PLACEHOLDER_PATTERN, SENSITIVE_KEYWORDS, RedactionRule, SecretCategory
)
from lumen.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

RedactionMode = Literal["fail_open", "fail_closed"]

# How far after a sensitive keyword a placeholder may sit and still count as covering it
_KEYWORD_REACH = 48


@dataclass(frozen=True)
class SecretToken:
    original: str
    category: SecretCategory


class PlaceholderInfo(BaseModel):
    placeholder: str
    type: SecretCategory


class RedactionReport(BaseModel):
    secrets_protected: int
    placeholders: List[PlaceholderInfo]


class SecretRedactor:
    """Replaces secrets with placeholders and restores them before execution.

    One instance is one run's secret scope: placeholders are unique within the
    instance and the mapping is never shared or reused across identities.
    """

    def __init__(self, rules: Optional[Sequence[RedactionRule]] = None, mode: RedactionMode = "fail_open"):
        self.rules: Tuple[RedactionRule, ...] = tuple(rules if rules is not None else DEFAULT_RULES)
        self.mode = mode
        self._secrets: Dict[str, SecretToken] = {}
        self._counters: Dict[str, int] = {}
        # Placeholder-shaped text seen in inputs; never handed out as a fresh placeholder
        self._reserved: Set[str] = set()

    def redact(self, text: str) -> str:
        """Return ``text`` with every recognised secret replaced by a placeholder"""
        self._reserved.update(PLACEHOLDER_PATTERN.findall(text))

        parts: List[str] = []
        cursor = 0
        # Existing placeholders are copied through untouched and never scanned
        for existing in PLACEHOLDER_PATTERN.finditer(text):
            parts.append(self._redact_segment(text[cursor:existing.start()]))
            parts.append(existing.group(0))
            cursor = existing.end()
        parts.append(self._redact_segment(text[cursor:]))
        redacted = "".join(parts)

        if self.mode == "fail_closed":
            leaked = self._uncovered_keywords(redacted)
            if leaked:
                logger.warning("Sensitive keywords left unredacted", keywords=leaked)
                raise UnredactedSecretError(leaked)

        return redacted

    def substitute(self, text: str) -> str:
        """Swap recognised placeholders back to their original values.

        Unknown placeholder-shaped tokens are left as they are. Single pass, so
        a restored value is never itself substituted again.
        """
        def _restore(match) -> str:
            token = self._secrets.get(match.group(0))
            return token.original if token else match.group(0)

        return PLACEHOLDER_PATTERN.sub(_restore, text)

    def mask(self, text: str) -> str:
        """Re-hide values this instance already knows, e.g. echoed in command output"""
        if not text or not self._secrets:
            return text
        by_value = {token.original: placeholder for placeholder, token in self._secrets.items()}
        # Longest originals first so a value containing another is masked whole
        pattern = re.compile("|".join(re.escape(value) for value in sorted(by_value, key=len, reverse=True)))
        return pattern.sub(lambda match: by_value[match.group(0)], text)

    def has_secrets(self) -> bool:
        return bool(self._secrets)

    def get_report(self) -> RedactionReport:
        return RedactionReport(
            secrets_protected=len(self._secrets),
            placeholders=[
                PlaceholderInfo(placeholder=placeholder, type=token.category)
                for placeholder, token in self._secrets.items()
            ],
        )

    def _redact_segment(self, segment: str) -> str:
        if not segment:
            return segment

        candidates = []
        for priority, rule in enumerate(self.rules):
            for start, end in rule.find(segment):
                candidates.append((start, -(end - start), priority, end, rule))

        # Earliest start first, then the longest span, then rule order
        candidates.sort(key=lambda c: (c[0], c[1], c[2]))

        out: List[str] = []
        cursor = 0
        for start, _, _, end, rule in candidates:
            if start < cursor:
                continue
            out.append(segment[cursor:start])
            out.append(self._store(segment[start:end], rule))
            cursor = end
        out.append(segment[cursor:])
        return "".join(out)

    def _store(self, value: str, rule: RedactionRule) -> str:
        placeholder = self._next_placeholder(rule)
        self._secrets[placeholder] = SecretToken(original=value, category=rule.category)
        metrics.increment_counter("redaction.secrets", tags={"category": rule.category.value})
        logger.debug("Secret redacted", rule=rule.name, placeholder=placeholder)
        return placeholder

    def _next_placeholder(self, rule: RedactionRule) -> str:
        index = self._counters.get(rule.token_prefix, 0)
        while True:
            index += 1
            placeholder = rule.placeholder(index)
            if placeholder not in self._secrets and placeholder not in self._reserved:
                self._counters[rule.token_prefix] = index
                return placeholder

    @staticmethod
    def _uncovered_keywords(redacted: str) -> List[str]:
        leaked = []
        for match in SENSITIVE_KEYWORDS.finditer(redacted):
            window = redacted[match.end():match.end() + _KEYWORD_REACH]
            if not PLACEHOLDER_PATTERN.search(window):
                leaked.append(match.group(0).lower())
        return leaked


def build_security_context(redactor: SecretRedactor) -> str:
    """Explain the placeholders to the reasoning stage. Empty when nothing was redacted."""
    report = redactor.get_report()
    if report.secrets_protected == 0:
        return ""

    placeholder_list = "\n".join(
        f"- {p.placeholder}: {p.type.value} (use this EXACT placeholder in commands)"
        for p in report.placeholders
    )

    return (
        f"SECURITY CONTEXT - {report.secrets_protected} secret(s) protected:\n"
        f"{placeholder_list}\n\n"
        "IMPORTANT: When generating commands, use these EXACT placeholder strings. "
        "They will be substituted with real values during execution. "
        "Never attempt to guess or fabricate the actual values, and never invent new placeholders."
    )

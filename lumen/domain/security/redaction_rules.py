"""
Secret matching rules.

Each rule names the category it protects, the pattern that finds it, which
regex group holds the sensitive value (0 = the whole match) and the prefix of
the placeholders it produces, e.g. ``{{PASSWORD_1}}``. Order matters: when two
rules match the same span, the earlier rule wins.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Pattern, Tuple


class SecretCategory(str, Enum):
    PASSWORD = "password"
    API_KEY = "api_key"
    TOKEN = "token"
    PRIVATE_KEY = "private_key"
    SECRET = "secret"


# Anything shaped like a placeholder. Used to avoid re-encoding and during substitution.
PLACEHOLDER_PATTERN: Pattern[str] = re.compile(r"\{\{[A-Z][A-Z0-9]*_\d+\}\}")


@dataclass(frozen=True)
class RedactionRule:
    name: str
    category: SecretCategory
    pattern: Pattern[str]
    token_prefix: str
    value_group: int = 0

    def placeholder(self, index: int) -> str:
        return "{{%s_%d}}" % (self.token_prefix, index)

    def find(self, text: str) -> List[Tuple[int, int]]:
        """Spans of the sensitive value for every match in ``text``"""
        spans = []
        for match in self.pattern.finditer(text):
            start, end = match.span(self.value_group)
            if start < end:
                spans.append((start, end))
        return spans


DEFAULT_RULES: List[RedactionRule] = [
    RedactionRule(
        name="pem_private_key",
        category=SecretCategory.PRIVATE_KEY,
        pattern=re.compile(
            r"-----BEGIN (?:[A-Z]+ )*PRIVATE KEY-----[\s\S]+?-----END (?:[A-Z]+ )*PRIVATE KEY-----"
        ),
        token_prefix="PRIVATEKEY",
    ),
    RedactionRule(
        name="url_credentials",
        category=SecretCategory.PASSWORD,
        pattern=re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.\-]*://[^\s:/@]+:([^\s@/]+)@"),
        token_prefix="PASSWORD",
        value_group=1,
    ),
    RedactionRule(
        name="openai_api_key",
        category=SecretCategory.API_KEY,
        pattern=re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_\-]{16,}"),
        token_prefix="APIKEY",
    ),
    RedactionRule(
        name="aws_access_key",
        category=SecretCategory.API_KEY,
        pattern=re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
        token_prefix="APIKEY",
    ),
    RedactionRule(
        name="github_token",
        category=SecretCategory.TOKEN,
        pattern=re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36,}|github_pat_[A-Za-z0-9_]{22,})\b"),
        token_prefix="TOKEN",
    ),
    RedactionRule(
        name="slack_token",
        category=SecretCategory.TOKEN,
        pattern=re.compile(r"\bxox[abposr]-[A-Za-z0-9\-]{10,}"),
        token_prefix="TOKEN",
    ),
    RedactionRule(
        name="jwt",
        category=SecretCategory.TOKEN,
        pattern=re.compile(r"\beyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}"),
        token_prefix="TOKEN",
    ),
    RedactionRule(
        name="bearer_token",
        category=SecretCategory.TOKEN,
        pattern=re.compile(r"\bBearer\s+([A-Za-z0-9\-._~+/]{16,}=*)"),
        token_prefix="TOKEN",
        value_group=1,
    ),
    RedactionRule(
        name="password_assignment",
        category=SecretCategory.PASSWORD,
        pattern=re.compile(
            r"\b(?:password|passwd|passphrase|pwd)\b\s*(?:[:=]|\bis\b)\s*(\S+)",
            re.IGNORECASE,
        ),
        token_prefix="PASSWORD",
        value_group=1,
    ),
    RedactionRule(
        name="secret_assignment",
        category=SecretCategory.SECRET,
        pattern=re.compile(
            r"\b(?:api[_\-]?key|secret(?:[_\-]?key)?|access[_\-]?key|auth[_\-]?token|token)\b\s*[:=]\s*(\S+)",
            re.IGNORECASE,
        ),
        token_prefix="SECRET",
        value_group=1,
    ),
]


# Words that suggest a secret is present even when no rule matched.
# Only consulted when redaction runs fail-closed.
SENSITIVE_KEYWORDS: Pattern[str] = re.compile(
    r"\b(password|passwd|passphrase|secret|api[ _\-]?key|private[ _\-]?key|access[ _\-]?key|token|credentials?)\b",
    re.IGNORECASE,
)

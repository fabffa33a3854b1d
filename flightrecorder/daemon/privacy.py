"""Privacy filter for captured content.

Every capture passes through the filter before it reaches the store:
- block mode drops content on the first matching pattern
- redact mode replaces every match with a placeholder
- warn-only mode logs hits and lets content through unchanged

Hits are logged by pattern name only, never with the matched text.
"""

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from loguru import logger


class FilterMode(str, Enum):
    """Mode of operation for the privacy filter."""
    BLOCK = "block"
    REDACT = "redact"
    WARN_ONLY = "warn_only"


class FilterOutcome(Enum):
    PASSED = "passed"
    BLOCKED = "blocked"
    REDACTED = "redacted"


@dataclass(frozen=True)
class FilterResult:
    """Result of classifying a piece of content."""
    outcome: FilterOutcome
    pattern_names: List[str] = field(default_factory=list)
    content: Optional[str] = None  # set only for redacted results

    @classmethod
    def passed(cls) -> "FilterResult":
        return cls(FilterOutcome.PASSED)

    @classmethod
    def blocked(cls, pattern_name: str) -> "FilterResult":
        return cls(FilterOutcome.BLOCKED, [pattern_name])

    @classmethod
    def redacted(cls, content: str, pattern_names: List[str]) -> "FilterResult":
        return cls(FilterOutcome.REDACTED, list(pattern_names), content)

    @property
    def pattern_name(self) -> Optional[str]:
        return self.pattern_names[0] if self.pattern_names else None


@dataclass(frozen=True)
class FilterPattern:
    """A named, compiled pattern."""
    name: str
    description: str
    regex: re.Pattern

    @classmethod
    def compile(cls, name: str, description: str, pattern: str) -> "FilterPattern":
        return cls(name, description, re.compile(pattern))

    def matches(self, content: str) -> bool:
        return self.regex.search(content) is not None

    def find_all(self, content: str) -> List[str]:
        return [m.group(0) for m in self.regex.finditer(content)]

    def redact(self, content: str, placeholder: str) -> str:
        return self.regex.sub(lambda _: placeholder, content)


# Checked in this order; in block mode the first match wins.
BUILTIN_PATTERN_DEFS = [
    (
        "api_key_generic",
        "Generic API key assignments (api_key=, apikey=, api_secret=)",
        r"""(?i)(api[_-]?key|apikey|api[_-]?secret)\s*[:=]\s*['"]?[a-zA-Z0-9_-]{16,}['"]?""",
    ),
    (
        "bearer_token",
        "Bearer authentication tokens",
        r"(?i)bearer\s+[a-zA-Z0-9_.=-]+",
    ),
    (
        "aws_key",
        "AWS access key IDs",
        r"(?i)(AKIA|ABIA|ACCA|ASIA)[A-Z0-9]{16}",
    ),
    (
        "aws_secret",
        "AWS secret access keys",
        r"""(?i)aws[_-]?secret[_-]?access[_-]?key\s*[:=]\s*['"]?[A-Za-z0-9/+=]{40}['"]?""",
    ),
    (
        "password_field",
        "Password assignments (password=, pwd:, secret=)",
        r"""(?i)(password|passwd|pwd|secret)\s*[:=]\s*['"]?[^\s'"]{4,}['"]?""",
    ),
    (
        "credit_card",
        "Credit card numbers (Visa, MasterCard, Amex, Discover)",
        r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}|6(?:011|5[0-9]{2})[0-9]{12})\b",
    ),
    (
        "ssn",
        "US Social Security Numbers",
        r"\b\d{3}-\d{2}-\d{4}\b",
    ),
    (
        "private_key",
        "PEM-encoded private key headers",
        r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----",
    ),
    (
        "github_token",
        "GitHub personal access and app tokens",
        r"(?i)(ghp_|gho_|ghu_|ghs_|ghr_)[a-zA-Z0-9]{36}",
    ),
    (
        "slack_token",
        "Slack API tokens",
        r"xox[baprs]-[0-9]+-[0-9]+-[a-zA-Z0-9]+",
    ),
    (
        "connection_string",
        "Database connection strings with embedded credentials",
        r"(?i)(mongodb(?:\+srv)?|postgres(?:ql)?|mysql|redis)://[^:\s]+:[^@\s]+@",
    ),
]

DEFAULT_EXCLUDED_APPS = [
    "1Password",
    "1Password 7",
    "1Password 8",
    "Bitwarden",
    "LastPass",
    "Dashlane",
    "KeePassXC",
    "Keychain Access",
    "Enpass",
    "Authenticator",
    "Google Authenticator",
    "Microsoft Authenticator",
    "Authy",
]

DEFAULT_PLACEHOLDER = "[REDACTED]"


def builtin_patterns() -> List[FilterPattern]:
    """Compile the built-in patterns in their declared order."""
    return [FilterPattern.compile(*entry) for entry in BUILTIN_PATTERN_DEFS]


def compile_custom_patterns(patterns: Sequence[str]) -> List[FilterPattern]:
    """
    Compile user-supplied patterns.

    Patterns that fail to compile are dropped with a warning; the rest stay
    usable. Each pattern is named after its position in the supplied list.
    """
    compiled = []
    for index, pattern in enumerate(patterns):
        try:
            compiled.append(FilterPattern.compile(
                f"custom_{index}", "User-defined pattern", pattern
            ))
        except re.error as e:
            logger.warning(f"Dropping invalid custom pattern #{index}: {e}")
    return compiled


@dataclass
class FilterConfig:
    """Configuration for the privacy filter."""
    enabled: bool = True
    mode: FilterMode = FilterMode.BLOCK
    use_builtin_patterns: bool = True
    custom_patterns: List[str] = field(default_factory=list)
    excluded_apps: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_APPS))
    redaction_placeholder: str = DEFAULT_PLACEHOLDER


class PrivacyFilter:
    """
    Classifies content as passable, blockable or redactable.

    Patterns are compiled once at construction and never change. The
    application exclusion list can be edited at runtime and is guarded by a
    lock.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()
        self.mode = FilterMode(self.config.mode)
        self.patterns: List[FilterPattern] = []
        if self.config.use_builtin_patterns:
            self.patterns.extend(builtin_patterns())
        self.patterns.extend(compile_custom_patterns(self.config.custom_patterns))

        self._excluded_lock = threading.Lock()
        self._excluded_apps: List[str] = []
        for app in self.config.excluded_apps:
            self.exclude_app(app)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def classify(self, content: str) -> FilterResult:
        """Classify content according to the configured mode."""
        if not self.config.enabled:
            return FilterResult.passed()

        if self.mode == FilterMode.BLOCK:
            return self._classify_block(content)
        if self.mode == FilterMode.REDACT:
            return self._classify_redact(content)
        return self._classify_warn(content)

    def _classify_block(self, content: str) -> FilterResult:
        for pattern in self.patterns:
            if pattern.matches(content):
                logger.debug(f"Content blocked by pattern: {pattern.name}")
                return FilterResult.blocked(pattern.name)
        return FilterResult.passed()

    def _classify_redact(self, content: str) -> FilterResult:
        result = content
        fired = []
        for pattern in self.patterns:
            if pattern.matches(result):
                result = pattern.redact(result, self.config.redaction_placeholder)
                fired.append(pattern.name)
                logger.debug(f"Content redacted by pattern: {pattern.name}")

        if not fired:
            return FilterResult.passed()
        return FilterResult.redacted(result, fired)

    def _classify_warn(self, content: str) -> FilterResult:
        for pattern in self.patterns:
            if pattern.matches(content):
                logger.warning(
                    f"Sensitive data detected (warn only): {pattern.name} - {pattern.description}"
                )
        return FilterResult.passed()

    def is_app_excluded(self, app_name: Optional[str]) -> bool:
        """Case-insensitive exact-name match against the exclusion list."""
        if not app_name:
            return False
        needle = app_name.casefold()
        with self._excluded_lock:
            return any(app.casefold() == needle for app in self._excluded_apps)

    def exclude_app(self, app_name: str) -> None:
        if not app_name or self.is_app_excluded(app_name):
            return
        with self._excluded_lock:
            self._excluded_apps.append(app_name)

    def unexclude_app(self, app_name: str) -> None:
        needle = app_name.casefold()
        with self._excluded_lock:
            self._excluded_apps = [a for a in self._excluded_apps if a.casefold() != needle]

    @property
    def excluded_apps(self) -> List[str]:
        with self._excluded_lock:
            return list(self._excluded_apps)

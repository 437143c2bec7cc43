"""Pydantic schemas for the bot configuration file: checks, severity levels, limits, false-positive policy.

All models are frozen; a loaded BotConfig is passed explicitly to every component for the run.
Unknown keys are ignored; missing required keys fail validation.
"""

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Words rendered upper-case when deriving a display name from a check id.
_ACRONYMS = frozenset({"sql", "xss", "xxe", "csrf", "ssrf", "api", "jwt", "ldap", "rce", "tls", "ssl", "idor"})

DEFAULT_RUN_TIMEOUT_SEC = 1800.0


def command_prefix_pattern(command: str, separator: str) -> str:
    """Regex for a configured command prefix; the first token (the bot mention) is case-insensitive."""
    head, *tail = command.split()
    return separator.join([f"(?i:{head})", *tail])


def display_name_from_id(check_id: str) -> str:
    """sql_injection -> 'SQL Injection', hardcoded_secrets -> 'Hardcoded Secrets'."""
    words = [w for w in check_id.replace("-", "_").split("_") if w]
    return " ".join(w.upper() if w.lower() in _ACRONYMS else w.capitalize() for w in words)


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class AIModelConfig(_Frozen):
    """Provider, model and generation parameters sent with every analysis request."""

    provider: Literal["openai", "ollama"]
    model: str = Field(..., min_length=1)
    temperature: float = Field(..., ge=0, le=2)
    max_tokens: int = Field(..., ge=1, le=128_000)
    system_prompt: str = Field(..., min_length=1)


class CheckDefinition(_Frozen):
    """One security check; patterns are hints for the provider, not local matchers."""

    id: str = Field(..., min_length=1)
    name: str = Field(default="", description="Display type used in reports and commands.")
    enabled: bool
    severity: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    owasp: str
    cwe: str
    confidence_threshold: float = Field(..., ge=0, le=1)
    patterns: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("id") and not str(data.get("name") or "").strip():
            return {**data, "name": display_name_from_id(str(data["id"]))}
        return data


class SeverityLevel(_Frozen):
    """Severity gate. A disabled level drops every finding of that severity."""

    name: str = Field(..., min_length=1)
    enabled: bool
    threshold: float = Field(..., ge=0, le=1)
    color: str
    description: str


class RateLimitConfig(_Frozen):
    requests: int = Field(..., ge=1)
    window: float = Field(..., gt=0, description="Window length in seconds.")


class PerformanceConfig(_Frozen):
    max_concurrent_requests: int = Field(..., ge=1, le=64)
    request_timeout: int = Field(..., gt=0, description="Transport timeout in milliseconds.")
    rate_limit: RateLimitConfig
    run_timeout: float = Field(
        default=DEFAULT_RUN_TIMEOUT_SEC,
        gt=0,
        description="Overall run budget in seconds; rate-limit waits beyond it fail the run.",
    )

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout / 1000.0


class FalsePositiveConfig(_Frozen):
    enabled: bool
    command: str = Field(..., min_length=1, description="Command prefix pattern, e.g. '@[Ss]ecurity[Bb]ot false-positive'.")
    storage: Literal["comments", "database"]
    expiration: int = Field(..., ge=1, description="Days until a mark expires.")
    require_approval: bool
    track_history: bool
    include_reason: bool

    @field_validator("command")
    @classmethod
    def command_must_compile(cls, v: str) -> str:
        if not v.split():
            raise ValueError("command must not be blank")
        try:
            re.compile(command_prefix_pattern(v, " "))
        except re.error as e:
            raise ValueError(f"command is not a valid pattern: {e}") from e
        return v


class LoggingConfig(_Frozen):
    """Optional logging section; defaults apply when it is absent."""

    level: Literal["debug", "info", "warn", "warning", "error"] = "info"
    file: str | None = None
    include_api_calls: bool = False
    include_vulnerability_details: bool = True
    include_false_positives: bool = True

    @property
    def python_level(self) -> str:
        return "WARNING" if self.level in ("warn", "warning") else self.level.upper()


class BotConfig(_Frozen):
    """Root of the YAML configuration."""

    confidence_threshold: float = Field(..., ge=0, le=1)
    max_lines: int = Field(..., ge=10)
    max_retries: int = Field(..., ge=0, le=10)
    api_timeout: int = Field(..., gt=0, description="Per-request analysis timeout in milliseconds.")
    ai_model: AIModelConfig
    security_checks: dict[str, CheckDefinition]
    severity_levels: dict[str, SeverityLevel]
    performance: PerformanceConfig
    false_positives: FalsePositiveConfig
    logging: LoggingConfig = LoggingConfig()

    @field_validator("security_checks", mode="before")
    @classmethod
    def inject_check_ids(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {
            key: ({**body, "id": key} if isinstance(body, dict) else body)
            for key, body in v.items()
        }

    @field_validator("severity_levels", mode="before")
    @classmethod
    def inject_severity_names(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {
            key: ({**body, "name": key} if isinstance(body, dict) else body)
            for key, body in v.items()
        }

    @model_validator(mode="after")
    def check_cross_references(self) -> "BotConfig":
        if not self.severity_levels:
            raise ValueError("severity_levels must declare at least one level")
        if not self.security_checks:
            raise ValueError("security_checks must declare at least one check")
        for check in self.security_checks.values():
            if check.severity not in self.severity_levels:
                raise ValueError(
                    f"check {check.id!r} uses undeclared severity {check.severity!r}"
                )
        names: dict[str, str] = {}
        for check in self.security_checks.values():
            if check.name in names:
                raise ValueError(
                    f"checks {names[check.name]!r} and {check.id!r} share the display name {check.name!r}"
                )
            names[check.name] = check.id
        return self

    @property
    def api_timeout_seconds(self) -> float:
        return self.api_timeout / 1000.0

    def severity_rank(self, severity: str) -> int:
        """Position of the level in declaration order (0 = most severe); unknown sorts last."""
        for rank, name in enumerate(self.severity_levels):
            if name == severity:
                return rank
        return len(self.severity_levels)

    def enabled_checks(self) -> list[CheckDefinition]:
        return [c for c in self.security_checks.values() if c.enabled]

    def check_by_name(self, name: str) -> CheckDefinition | None:
        for check in self.security_checks.values():
            if check.name == name:
                return check
        return None

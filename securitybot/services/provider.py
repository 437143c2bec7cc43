"""Analysis providers: send one chunk to an LLM and validate what comes back against that chunk."""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from securitybot.core.errors import AnalysisError, ConfigError
from securitybot.schemas.changeset import Chunk, line_checksum
from securitybot.schemas.config import AIModelConfig, CheckDefinition
from securitybot.schemas.findings import RawFinding

if TYPE_CHECKING:
    from securitybot.core.config import Settings

logger = logging.getLogger(__name__)

# 429 and 5xx are worth another attempt; other 4xx (bad key, unknown model) are not.
_RETRYABLE_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class AnalysisRequest(BaseModel):
    """Everything a provider needs for one chunk."""

    model_config = ConfigDict(frozen=True)

    model: AIModelConfig
    chunk: Chunk
    checks: tuple[CheckDefinition, ...]

    @property
    def prompt(self) -> str:
        return build_prompt(self.chunk, self.checks)


def build_prompt(chunk: Chunk, checks: Sequence[CheckDefinition]) -> str:
    """User prompt: the enabled checks and the numbered chunk, asking for JSON findings only."""
    checks_data = [
        {
            "id": c.id,
            "name": c.name,
            "description": c.description,
            "owasp": c.owasp,
            "cwe": c.cwe,
            "patterns": list(c.patterns),
        }
        for c in checks
    ]
    checks_json = json.dumps(checks_data, indent=2)
    return f"""Review the following code from {chunk.path} (lines {chunk.start_line}-{chunk.end_line}) for security vulnerabilities.

Only report issues matching one of these checks (JSON). Patterns are hints, not rules:
{checks_json}

Code (each line is prefixed with its absolute line number and " | "):
{chunk.numbered()}

Respond with ONLY a single valid JSON object (no markdown, no code fence, no extra text). The JSON must have exactly this shape:
{{
  "findings": [
    {{
      "check_id": "<one of the check ids above>",
      "confidence": 0.0,
      "file": "{chunk.path}",
      "line": <absolute line number from the listing>,
      "description": "What is wrong and how it could be exploited.",
      "suggested_fix": "How to fix it."
    }}
  ]
}}

confidence is between 0 and 1. Use an empty "findings" list when nothing applies. Output only the JSON object."""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


def parse_findings(
    text: str,
    chunk: Chunk,
    checks: Sequence[CheckDefinition],
) -> list[RawFinding]:
    """
    Validate provider output for one chunk.

    The whole response must be JSON holding a list of findings (a bare list, or an object with a
    "findings" list); otherwise AnalysisError (retryable) is raised. Individual records that fail
    validation are logged and skipped. Valid records are re-pointed at the chunk's own path and
    stamped with the chunk index, their position in the response, and the flagged line's checksum.
    """
    try:
        parsed: Any = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise AnalysisError("Invalid JSON from model. The model must respond with only valid JSON.", cause=e) from e

    if isinstance(parsed, dict):
        parsed = parsed.get("findings")
    if not isinstance(parsed, list):
        raise AnalysisError("Model output does not contain a list of findings.")

    known = {c.id: c for c in checks}
    context = {"checks": known, "chunk": chunk}
    findings: list[RawFinding] = []
    for ordinal, record in enumerate(parsed):
        try:
            raw = RawFinding.model_validate(record, context=context)
        except ValidationError as e:
            logger.warning(
                "Discarding invalid finding from provider",
                extra={
                    "chunk_index": chunk.index,
                    "file": chunk.path,
                    "ordinal": ordinal,
                    "errors": e.error_count(),
                    "detail": "; ".join(err["msg"] for err in e.errors()),
                },
            )
            continue
        findings.append(
            raw.model_copy(
                update={
                    "file": chunk.path,
                    "chunk_index": chunk.index,
                    "ordinal": ordinal,
                    "content_hash": line_checksum(chunk.line_at(raw.line)),
                }
            )
        )
    return findings


class AnalysisProvider(ABC):
    """Sends one analysis request and returns the model's raw text."""

    name: str = "provider"

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> str:
        """Raise AnalysisError on failure; `retryable` says whether another attempt may help."""


def _request_failed(exc: httpx.HTTPError, provider: str, base_url: str) -> AnalysisError:
    if isinstance(exc, httpx.ConnectError):
        return AnalysisError(f"{provider} is unreachable at {base_url}.", cause=exc)
    if isinstance(exc, httpx.TimeoutException):
        return AnalysisError(f"{provider} request timed out.", cause=exc)
    return AnalysisError(f"{provider} request failed.", cause=exc)


def _status_error(provider: str, status_code: int) -> AnalysisError:
    return AnalysisError(
        f"{provider} returned status {status_code}.",
        retryable=status_code in _RETRYABLE_STATUS or status_code >= 500,
    )


class _HttpProvider(AnalysisProvider):
    def __init__(self, base_url: str, timeout_seconds: float, *, log_requests: bool = False) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.log_requests = log_requests

    def _headers(self) -> dict[str, str]:
        return {}

    async def _post(self, url: str, payload: dict[str, Any], request: AnalysisRequest) -> dict[str, Any]:
        start = time.perf_counter()
        log_extra: dict[str, Any] = {
            "provider": self.name,
            "model": request.model.model,
            "chunk_index": request.chunk.index,
            "file": request.chunk.path,
        }
        if self.log_requests:
            logger.debug(
                "Provider request",
                extra={**log_extra, "url": url, "prompt_chars": len(request.prompt)},
            )
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.info(
                "Provider request failed",
                extra={**log_extra, "latency_seconds": time.perf_counter() - start, "status": "error"},
            )
            raise _request_failed(e, self.name, self.base_url) from e

        elapsed = time.perf_counter() - start
        if response.status_code != 200:
            logger.info(
                "Provider request failed",
                extra={**log_extra, "latency_seconds": elapsed, "status": response.status_code},
            )
            raise _status_error(self.name, response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError both land here.
            raise AnalysisError(f"{self.name} response body is not valid JSON.", cause=e) from e
        if not isinstance(body, dict):
            raise AnalysisError(f"{self.name} response body is not a JSON object.")
        if self.log_requests:
            logger.debug("Provider request completed", extra={**log_extra, "latency_seconds": elapsed})
        return body


class OpenAIProvider(_HttpProvider):
    """OpenAI-compatible chat completions endpoint."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        *,
        log_requests: bool = False,
    ) -> None:
        super().__init__(base_url, timeout_seconds, log_requests=log_requests)
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def analyze(self, request: AnalysisRequest) -> str:
        payload = {
            "model": request.model.model,
            "temperature": request.model.temperature,
            "max_tokens": request.model.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": request.model.system_prompt},
                {"role": "user", "content": request.prompt},
            ],
        }
        body = await self._post(f"{self.base_url}/chat/completions", payload, request)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisError("openai response missing choices[0].message.content.", cause=e) from e
        if not isinstance(content, str):
            raise AnalysisError("openai response content is not text.")
        return content


class OllamaProvider(_HttpProvider):
    """Local Ollama /api/generate with JSON output."""

    name = "ollama"

    async def analyze(self, request: AnalysisRequest) -> str:
        payload = {
            "model": request.model.model,
            "system": request.model.system_prompt,
            "prompt": request.prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": request.model.temperature,
                "num_predict": request.model.max_tokens,
            },
        }
        body = await self._post(f"{self.base_url}/api/generate", payload, request)
        raw_response = body.get("response")
        if raw_response is None:
            raise AnalysisError("ollama response missing 'response' field.")
        # Response may be a string (the generated text) or already parsed
        if isinstance(raw_response, str):
            return raw_response
        return json.dumps(raw_response)


def build_provider(
    ai_model: AIModelConfig,
    settings: "Settings",
    timeout_seconds: float,
    *,
    log_requests: bool = False,
) -> AnalysisProvider:
    """Select the provider named in the bot config. Missing credentials are a ConfigError."""
    if ai_model.provider == "openai":
        if settings.OPENAI_API_KEY is None or not settings.OPENAI_API_KEY.get_secret_value():
            raise ConfigError("OPENAI_API_KEY must be set when ai_model.provider is 'openai'")
        return OpenAIProvider(
            settings.OPENAI_API_KEY.get_secret_value(),
            settings.OPENAI_BASE_URL,
            timeout_seconds,
            log_requests=log_requests,
        )
    if ai_model.provider == "ollama":
        return OllamaProvider(settings.OLLAMA_BASE_URL, timeout_seconds, log_requests=log_requests)
    raise ConfigError(f"Unsupported ai_model.provider {ai_model.provider!r}")

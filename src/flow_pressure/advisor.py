"""LLM advisor adapters.

Every caller goes through ``judge_or_default``: advisor output is treated as
untrusted, best-effort input and any failure degrades to the caller's default.
Rate limiting (HTTP 429) is logged separately from other failures so that
operators can tell throttling apart from outages.
"""

from __future__ import annotations

import json
import time
from typing import Protocol

import requests
from loguru import logger

from .errors import AdvisorError, AdvisorRateLimitError
from .ratelimit import RateLimiter
from .settings import settings


class Advisor(Protocol):
    name: str

    def judge(self, prompt: str, schema: dict) -> dict: ...


def _render_prompt(prompt: str, schema: dict) -> str:
    return f"{prompt}\n\nRespond with a single JSON object matching this schema:\n{json.dumps(schema)}"


def _parse_json_object(text: str) -> dict:
    try:
        parsed = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise AdvisorError(f"Advisor returned non-JSON content: {str(text)[:120]}") from exc
    if not isinstance(parsed, dict):
        raise AdvisorError("Advisor returned JSON that is not an object")
    return parsed


def _raise_for_status(response: requests.Response, provider: str) -> None:
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            seconds = float(retry_after) if retry_after is not None else None
        except ValueError:
            seconds = None
        raise AdvisorRateLimitError(f"{provider} rate limit exceeded", retry_after=seconds)
    try:
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise AdvisorError(f"{provider} request failed: {exc}") from exc


class OpenAIAdvisor:
    name = "openai"

    def __init__(self, limiter: RateLimiter | None = None) -> None:
        self.base_url = settings.openai_base_url.rstrip("/")
        self.timeout_seconds = settings.openai_timeout_seconds
        self.model = settings.openai_model
        self.limiter = limiter or RateLimiter(settings.advisor_min_interval_seconds)
        self.last_latency_seconds: float | None = None

    def is_configured(self) -> bool:
        return bool(settings.openai_api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def _extract_text_response(self, payload: dict) -> str:
        choices = payload.get("choices", [])
        if choices:
            content = choices[0].get("message", {}).get("content", "")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                return "\n".join(
                    str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("type") == "text"
                )
        return "{}"

    def judge(self, prompt: str, schema: dict) -> dict:
        if not self.is_configured():
            raise AdvisorError("OpenAI API key is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are a market analyst. Return only strict JSON."},
                {"role": "user", "content": _render_prompt(prompt, schema)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.2,
            "max_tokens": settings.openai_max_output_tokens,
        }

        self.limiter.wait()
        start = time.perf_counter()
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AdvisorError(f"OpenAI request failed: {exc}") from exc
        self.last_latency_seconds = time.perf_counter() - start
        _raise_for_status(response, "OpenAI")
        return _parse_json_object(self._extract_text_response(response.json() or {}))


class OllamaAdvisor:
    name = "ollama"

    def __init__(self, base_url: str | None = None, model: str | None = None, limiter: RateLimiter | None = None) -> None:
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.timeout_seconds = settings.ollama_timeout_seconds
        self.limiter = limiter or RateLimiter(settings.advisor_min_interval_seconds)
        self.last_latency_seconds: float | None = None

    def list_models(self) -> list[str]:
        response = requests.get(f"{self.base_url}/api/tags", timeout=self.timeout_seconds)
        response.raise_for_status()
        payload = response.json() or {}
        return [model.get("name", "") for model in payload.get("models", []) if model.get("name")]

    def _resolve_model(self) -> str:
        if self.model:
            return self.model
        try:
            installed = self.list_models()
        except requests.RequestException as exc:
            raise AdvisorError(f"Ollama is unreachable at {self.base_url}: {exc}") from exc
        if not installed:
            raise AdvisorError("No Ollama models available. Pull at least one model with `ollama pull <model>`.")
        self.model = installed[0]
        logger.info("Ollama advisor using first installed model {}", self.model)
        return self.model

    def judge(self, prompt: str, schema: dict) -> dict:
        payload = {
            "model": self._resolve_model(),
            "prompt": _render_prompt(prompt, schema),
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.2},
        }

        self.limiter.wait()
        start = time.perf_counter()
        try:
            response = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise AdvisorError(f"Ollama request failed: {exc}") from exc
        self.last_latency_seconds = time.perf_counter() - start
        _raise_for_status(response, "Ollama")
        return _parse_json_object((response.json() or {}).get("response", ""))


class NullAdvisor:
    name = "none"

    def judge(self, prompt: str, schema: dict) -> dict:
        raise AdvisorError("No advisor configured")


def build_advisor(provider: str | None = None) -> Advisor:
    provider = provider or settings.ai_provider
    if provider == "openai" or (provider == "auto" and settings.openai_api_key.strip()):
        return OpenAIAdvisor()
    if provider == "ollama" or (provider == "auto" and settings.ollama_model.strip()):
        return OllamaAdvisor()
    return NullAdvisor()


def judge_or_default(
    advisor: Advisor | None,
    prompt: str,
    schema: dict,
    default: dict,
    limiter: RateLimiter | None = None,
) -> dict:
    """Ask the advisor, falling back to ``default`` on any failure.

    Keys missing from the advisor's answer are filled from ``default``.
    """
    if advisor is None:
        return dict(default)
    if limiter is not None:
        limiter.wait()
    try:
        answer = advisor.judge(prompt, schema)
    except AdvisorRateLimitError as exc:
        logger.warning("Advisor {} throttled (retry after {}s); using defaults", advisor.name, exc.retry_after)
        return dict(default)
    except Exception as exc:
        logger.warning("Advisor {} failed: {}; using defaults", getattr(advisor, "name", "?"), exc)
        return dict(default)
    return {**default, **{key: value for key, value in answer.items() if value is not None}}

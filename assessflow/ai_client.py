"""
AI client for assessment analysis.

One analysis equals one model call. The call runs on a worker thread and is
bounded by a hard wall-clock deadline; when the deadline passes the in-flight
call is aborted and AiTimeoutError is raised. The client never re-issues a
call, and the openai SDK is built with max_retries=0 so it does not either.

Failure kinds:
  TIMEOUT    deadline exceeded                      -> ErrorCode.AI_TIMEOUT (terminal)
  UPSTREAM   provider answered with an error or junk -> ErrorCode.AI_UPSTREAM (terminal)
  TRANSPORT  connection-level failure                -> ErrorCode.TRANSPORT (retryable)

Configuration via environment variables:
  AI_REQUEST_TIMEOUT_MS = 300000                     (hard deadline per call)
  LLM_MODEL             = gpt-4o-mini
  LLM_TEMPERATURE       = 0.2
  LLM_MAX_TOKENS        = 2048
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or any OpenAI-compatible endpoint)
  MOCK_LLM_ENABLED      = true                       (deterministic local analysis)
  MOCK_LLM_DELAY_MS     = 0
  MOCK_LLM_FAILURE      = timeout | upstream | transport   (force a failure kind)
  AI_RATE_LIMIT         = 15/minute                  (openai default; "off" disables; mock is unlimited unless set)
  AI_RATE_LIMIT_STORAGE_URI = memory://              (redis://... shares the budget across workers)
  AI_RATE_LIMIT_MAX_WAIT_MS = 30000                  (longest wait for a slot before a TRANSPORT failure)
  AI_USAGE_MAX_RECORDS  = 10000

Every successful analysis carries a "usage" block (tokens, model, latency)
that ends up in the Result payload; totals are kept by UsageTracker.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from collections import deque
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, replace
from typing import Any, Protocol

from limits import parse as parse_rate_limit
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from assessflow.errors import ErrorCode
from assessflow.settings import _env_bool, _env_int, true_stack_required

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_RATE_LIMIT = "15/minute"


class AiClientError(RuntimeError):
    kind = "UPSTREAM"
    error_code = ErrorCode.AI_UPSTREAM


class AiTimeoutError(AiClientError):
    kind = "TIMEOUT"
    error_code = ErrorCode.AI_TIMEOUT


class AiUpstreamError(AiClientError):
    kind = "UPSTREAM"
    error_code = ErrorCode.AI_UPSTREAM


class AiTransportError(AiClientError):
    kind = "TRANSPORT"
    error_code = ErrorCode.TRANSPORT


class AiRateLimitedError(AiTransportError):
    """No call slot freed up in time; nothing was sent to the provider."""


@dataclass(frozen=True)
class AiClientConfig:
    provider: str = "mock"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout_ms: int = 300000
    mock_delay_ms: int = 0
    mock_failure: str = ""
    rate_limit: str = ""
    rate_limit_storage_uri: str = "memory://"
    rate_limit_max_wait_ms: int = 30000
    usage_max_records: int = 10000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AiClientConfig":
        env = os.environ if environ is None else environ
        mock_enabled = _env_bool(env, "MOCK_LLM_ENABLED", default=True)
        try:
            temperature = float(str(env.get("LLM_TEMPERATURE", "0.2")).strip() or "0.2")
        except ValueError:
            temperature = 0.2
        rate_limit = str(env.get("AI_RATE_LIMIT", DEFAULT_OPENAI_RATE_LIMIT if not mock_enabled else "")).strip()
        if rate_limit.lower() in {"0", "off", "none", "false"}:
            rate_limit = ""
        return cls(
            provider="mock" if mock_enabled else "openai",
            model=str(env.get("LLM_MODEL", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            api_key=str(env.get("OPENAI_API_KEY", "")).strip(),
            base_url=str(env.get("OPENAI_BASE_URL", "")).strip(),
            temperature=temperature,
            max_tokens=_env_int(env, "LLM_MAX_TOKENS", default=2048, minimum=1),
            timeout_ms=_env_int(env, "AI_REQUEST_TIMEOUT_MS", default=300000, minimum=1),
            mock_delay_ms=_env_int(env, "MOCK_LLM_DELAY_MS", default=0),
            mock_failure=str(env.get("MOCK_LLM_FAILURE", "")).strip().lower(),
            rate_limit=rate_limit,
            rate_limit_storage_uri=str(env.get("AI_RATE_LIMIT_STORAGE_URI", "memory://")).strip() or "memory://",
            rate_limit_max_wait_ms=_env_int(env, "AI_RATE_LIMIT_MAX_WAIT_MS", default=30000),
            usage_max_records=_env_int(env, "AI_USAGE_MAX_RECORDS", default=10000, minimum=1),
        )


def estimate_tokens(text: str) -> int:
    """Rough count, about four UTF-8 bytes per token."""
    return max(1, len(text.encode("utf-8")) // 4)


@dataclass
class AiUsage:
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: float = 0.0
    estimated: bool = False
    success: bool = True

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class UsageTracker:
    """Keeps the most recent call usages and answers aggregate questions about them."""

    def __init__(self, *, max_records: int = 10000) -> None:
        self._records: deque[AiUsage] = deque(maxlen=max(1, max_records))
        self._lock = threading.Lock()

    def record(self, usage: AiUsage) -> None:
        with self._lock:
            self._records.append(usage)

    def summary(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records)
        by_model: dict[str, dict[str, int]] = {}
        for item in records:
            bucket = by_model.setdefault(item.model, {"calls": 0, "total_tokens": 0})
            bucket["calls"] += 1
            bucket["total_tokens"] += item.total_tokens
        succeeded = [item for item in records if item.success]
        latency = sum(item.latency_ms for item in succeeded)
        return {
            "calls": len(records),
            "failures": len(records) - len(succeeded),
            "prompt_tokens": sum(item.prompt_tokens for item in records),
            "completion_tokens": sum(item.completion_tokens for item in records),
            "total_tokens": sum(item.total_tokens for item in records),
            "avg_latency_ms": round(latency / len(succeeded), 1) if succeeded else 0.0,
            "by_model": by_model,
        }

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class AiRateLimiter:
    """Moving-window budget of provider calls.

    With a redis:// storage URI every worker process draws from one budget.
    """

    def __init__(
        self,
        *,
        rate: str,
        storage_uri: str = "memory://",
        max_wait_ms: int = 30000,
        key: str = "ai-calls",
    ) -> None:
        self.item = parse_rate_limit(rate)
        self.storage = storage_from_string(storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.max_wait_s = max(0, max_wait_ms) / 1000.0
        self.key = key

    def acquire(self, *, max_wait_s: float | None = None) -> float:
        """Take one slot, waiting for the window to move if needed. Returns seconds waited."""
        budget_s = self.max_wait_s if max_wait_s is None else min(self.max_wait_s, max_wait_s)
        started = time.monotonic()
        while not self.strategy.hit(self.item, self.key):
            left_s = budget_s - (time.monotonic() - started)
            if left_s <= 0:
                raise AiRateLimitedError(f"AI rate limit {self.item} exhausted; no slot within {budget_s:.3f}s")
            reset_at, _remaining = self.strategy.get_window_stats(self.item, self.key)
            time.sleep(min(max(0.01, reset_at - time.time()), left_s))
        waited = time.monotonic() - started
        if waited > 0.05:
            logger.info("ai_rate_limit_waited key=%s waited_ms=%s", self.key, int(waited * 1000))
        return waited

    def reset(self) -> None:
        self.storage.reset()


class ProviderCall(Protocol):
    def run(self) -> dict[str, Any]: ...

    def abort(self) -> None: ...


class AnalysisProvider(Protocol):
    name: str

    def open_call(self, payload: dict[str, Any], *, timeout_s: float) -> ProviderCall: ...


_SYSTEM_PROMPT = """You are a career and personality analyst.
You receive RIASEC, OCEAN (Big Five) and VIA-IS character strength scores (0-100).
Return one JSON object with exactly these keys:
  "archetype": string,
  "shortSummary": string,
  "strengths": array of strings,
  "weaknesses": array of strings,
  "careerRecommendation": array of {"careerName": string, "justification": string},
  "insights": array of strings,
  "workEnvironment": string
Base every statement on the scores. Do not invent data that is not in the input."""


def parse_analysis_output(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise AiUpstreamError(f"AI response is not valid JSON: {exc.msg}") from None
    if not isinstance(data, dict) or not data:
        raise AiUpstreamError("AI response is not a JSON object")
    return data


def _import_openai() -> Any:
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required for the openai provider; install openai>=1.0") from exc
    return openai


def _usage_from_response(usage_data: Any, *, model: str, prompt: str, content: str) -> AiUsage:
    if usage_data is None:
        prompt_tokens = estimate_tokens(prompt)
        completion_tokens = estimate_tokens(content)
        return AiUsage(
            provider="openai",
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated=True,
        )
    prompt_tokens = int(getattr(usage_data, "prompt_tokens", 0) or 0)
    completion_tokens = int(getattr(usage_data, "completion_tokens", 0) or 0)
    return AiUsage(
        provider="openai",
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=int(getattr(usage_data, "total_tokens", 0) or 0) or prompt_tokens + completion_tokens,
    )


class _OpenAICall:
    def __init__(self, *, config: AiClientConfig, payload: dict[str, Any], timeout_s: float) -> None:
        self._openai = _import_openai()
        kwargs: dict[str, Any] = {"timeout": timeout_s, "max_retries": 0}
        if config.api_key:
            kwargs["api_key"] = config.api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
            # self-hosted OpenAI-compatible servers accept any key
            kwargs.setdefault("api_key", "local")
        self._client = self._openai.OpenAI(**kwargs)
        self._config = config
        self._payload = payload
        self._aborted = threading.Event()
        self.usage: AiUsage | None = None

    def run(self) -> dict[str, Any]:
        openai = self._openai
        scores = {k: self._payload.get(k) for k in ("riasec", "ocean", "viaIs")}
        prompt = json.dumps(scores, ensure_ascii=False, sort_keys=True)
        try:
            response = self._client.chat.completions.create(
                model=self._config.model,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.APITimeoutError as exc:
            raise AiTimeoutError(f"provider request timed out: {exc}") from exc
        except openai.APIStatusError as exc:
            raise AiUpstreamError(f"provider returned HTTP {exc.status_code}") from exc
        except openai.APIConnectionError as exc:
            if self._aborted.is_set():
                raise AiTimeoutError("provider call aborted at deadline") from exc
            raise AiTransportError(f"provider connection failed: {exc}") from exc
        if not response.choices:
            raise AiUpstreamError("provider returned no choices")
        content = response.choices[0].message.content or ""
        self.usage = _usage_from_response(
            getattr(response, "usage", None),
            model=self._config.model,
            prompt=_SYSTEM_PROMPT + prompt,
            content=content,
        )
        return parse_analysis_output(content)

    def abort(self) -> None:
        self._aborted.set()
        self._client.close()


class OpenAIAnalysisProvider:
    name = "openai"

    def __init__(self, config: AiClientConfig) -> None:
        self.config = config

    @property
    def model(self) -> str:
        return self.config.model

    def open_call(self, payload: dict[str, Any], *, timeout_s: float) -> ProviderCall:
        return _OpenAICall(config=self.config, payload=payload, timeout_s=timeout_s)


_ARCHETYPES = {
    "realistic": "The Builder",
    "investigative": "The Analyst",
    "artistic": "The Creator",
    "social": "The Helper",
    "enterprising": "The Leader",
    "conventional": "The Organizer",
}

_CAREERS = {
    "realistic": ["Mechanical Engineer", "Field Technician"],
    "investigative": ["Data Scientist", "Research Analyst"],
    "artistic": ["Product Designer", "Content Strategist"],
    "social": ["Counselor", "Teacher"],
    "enterprising": ["Product Manager", "Sales Lead"],
    "conventional": ["Financial Analyst", "Operations Coordinator"],
}


def _ranked(scores: dict[str, Any]) -> list[str]:
    return [k for k, _ in sorted(scores.items(), key=lambda item: (-int(item[1]), item[0]))]


def build_mock_analysis(payload: dict[str, Any]) -> dict[str, Any]:
    """Deterministic analysis derived from the scores; same input, same output."""
    riasec = payload.get("riasec") or {}
    ocean = payload.get("ocean") or {}
    via_is = payload.get("viaIs") or {}
    top_riasec = _ranked(riasec)[:3]
    top_strengths = _ranked(via_is)[:5]
    low_strengths = list(reversed(_ranked(via_is)))[:3]
    high_traits = [k for k, v in sorted(ocean.items()) if int(v) >= 60]
    low_traits = [k for k, v in sorted(ocean.items()) if int(v) <= 40]
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
    primary = top_riasec[0] if top_riasec else "investigative"
    holland_code = "".join(x[0].upper() for x in top_riasec)
    return {
        "archetype": _ARCHETYPES.get(primary, "The Explorer"),
        "hollandCode": holland_code,
        "shortSummary": (
            f"Dominant interests: {', '.join(top_riasec)}. "
            f"Signature strengths: {', '.join(top_strengths[:3])}."
        ),
        "strengths": top_strengths,
        "weaknesses": low_strengths,
        "personalityHighlights": {"high": high_traits, "low": low_traits},
        "careerRecommendation": [
            {"careerName": name, "justification": f"Aligned with a strong {area} interest profile."}
            for area in top_riasec[:2]
            for name in _CAREERS.get(area, [])
        ],
        "insights": [f"Leverage {s} in day-to-day work." for s in top_strengths[:3]],
        "workEnvironment": "collaborative" if "extraversion" in high_traits else "focused",
        "analysisVersion": f"mock-{digest[:8]}",
    }


class _MockCall:
    def __init__(self, *, payload: dict[str, Any], delay_ms: int, failure: str) -> None:
        self._payload = payload
        self._delay_s = max(0, delay_ms) / 1000.0
        self._failure = failure
        self._cancel = threading.Event()
        self.usage: AiUsage | None = None

    def run(self) -> dict[str, Any]:
        if self._delay_s and self._cancel.wait(self._delay_s):
            raise AiTransportError("mock call aborted")
        if self._failure == "timeout":
            raise AiTimeoutError("mock provider timed out")
        if self._failure == "upstream":
            raise AiUpstreamError("mock provider rejected the request")
        if self._failure == "transport":
            raise AiTransportError("mock provider connection refused")
        analysis = build_mock_analysis(self._payload)
        prompt_tokens = estimate_tokens(_SYSTEM_PROMPT + json.dumps(self._payload, sort_keys=True))
        completion_tokens = estimate_tokens(json.dumps(analysis, sort_keys=True))
        self.usage = AiUsage(
            provider="mock",
            model=MockAnalysisProvider.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated=True,
        )
        return analysis

    def abort(self) -> None:
        self._cancel.set()


class MockAnalysisProvider:
    name = "mock"
    model = "mock-analysis"

    def __init__(self, *, delay_ms: int = 0, failure: str = "") -> None:
        self.delay_ms = delay_ms
        self.failure = failure

    def open_call(self, payload: dict[str, Any], *, timeout_s: float) -> ProviderCall:
        return _MockCall(payload=payload, delay_ms=self.delay_ms, failure=self.failure)


class AIClient:
    def __init__(
        self,
        *,
        provider: AnalysisProvider,
        timeout_ms: int = 300000,
        max_concurrency: int = 4,
        rate_limiter: AiRateLimiter | None = None,
        usage_tracker: UsageTracker | None = None,
    ) -> None:
        self.provider = provider
        self.timeout_ms = max(1, int(timeout_ms))
        self.rate_limiter = rate_limiter
        self.usage_tracker = usage_tracker or UsageTracker()
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_concurrency), thread_name_prefix="ai-call")

    @property
    def model(self) -> str:
        return str(getattr(self.provider, "model", self.provider.name))

    def infer(self, payload: dict[str, Any], *, deadline_s: float | None = None) -> dict[str, Any]:
        """Run one analysis and return it with a ``usage`` block attached.

        The deadline bounds the provider call; waiting for a rate-limit slot
        happens before it starts and gives up after at most the same span.
        """
        timeout_s = deadline_s if deadline_s is not None else self.timeout_ms / 1000.0
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(max_wait_s=timeout_s)
        call = self.provider.open_call(payload, timeout_s=timeout_s)
        started = time.monotonic()
        try:
            analysis = self._await(call, timeout_s=timeout_s)
        except AiClientError as exc:
            self.usage_tracker.record(
                AiUsage(
                    provider=self.provider.name,
                    model=self.model,
                    latency_ms=round((time.monotonic() - started) * 1000, 1),
                    success=False,
                )
            )
            logger.info("ai_call_failed_usage provider=%s kind=%s", self.provider.name, exc.kind)
            raise
        usage = getattr(call, "usage", None) or AiUsage(provider=self.provider.name, model=self.model, estimated=True)
        usage.latency_ms = round((time.monotonic() - started) * 1000, 1)
        self.usage_tracker.record(usage)
        logger.info(
            "ai_call_usage provider=%s model=%s prompt_tokens=%s completion_tokens=%s latency_ms=%s",
            usage.provider,
            usage.model,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.latency_ms,
        )
        return {**analysis, "usage": usage.as_dict()}

    def _await(self, call: ProviderCall, *, timeout_s: float) -> dict[str, Any]:
        future = self._executor.submit(call.run)
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeoutError:
            call.abort()
            future.cancel()
            logger.warning("ai_call_deadline_exceeded provider=%s timeout_s=%.3f", self.provider.name, timeout_s)
            raise AiTimeoutError(f"AI call exceeded deadline of {timeout_s:.3f}s") from None
        except AiClientError:
            raise
        except Exception as exc:
            raise AiUpstreamError(f"unexpected provider failure: {type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def create_ai_client_from_env(environ: Mapping[str, str] | None = None) -> AIClient:
    env = os.environ if environ is None else environ
    config = AiClientConfig.from_env(env)
    if config.provider == "openai" and not config.api_key and not config.base_url:
        if true_stack_required(env):
            raise RuntimeError("OPENAI_API_KEY must be set when MOCK_LLM_ENABLED=false")
        logger.warning("OPENAI_API_KEY not set; falling back to mock analysis provider")
        config = replace(config, provider="mock", rate_limit=config.rate_limit if "AI_RATE_LIMIT" in env else "")
    if config.provider == "openai":
        provider: AnalysisProvider = OpenAIAnalysisProvider(config)
    else:
        provider = MockAnalysisProvider(delay_ms=config.mock_delay_ms, failure=config.mock_failure)
    rate_limiter = None
    if config.rate_limit:
        rate_limiter = AiRateLimiter(
            rate=config.rate_limit,
            storage_uri=config.rate_limit_storage_uri,
            max_wait_ms=config.rate_limit_max_wait_ms,
        )
    return AIClient(
        provider=provider,
        timeout_ms=config.timeout_ms,
        rate_limiter=rate_limiter,
        usage_tracker=UsageTracker(max_records=config.usage_max_records),
    )

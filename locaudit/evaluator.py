"""AI evaluation capability: send one prompt, get back ``{score, issues}``.

The client talks to Anthropic or OpenAI. Transport retries are left to the
provider SDKs; any failure surfaces as :class:`LLMCallError` and is fatal to
the audit that triggered it.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from locaudit.utils import extract_json_object, round_half_up

if TYPE_CHECKING:
    from locaudit.config import Settings

log = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high")
_ISSUE_FIELDS = ("original_text", "translated_text", "reason", "suggestion")


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class AiIssue:
    original_text: str = ""
    translated_text: str = ""
    reason: str = ""
    suggestion: str = ""
    severity: str = "medium"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> AiIssue:
        severity = str(raw.get("severity") or "").strip().lower()
        if severity not in SEVERITIES:
            severity = "medium"
        return cls(
            **{f: str(raw.get(f) or "") for f in _ISSUE_FIELDS},
            severity=severity,
        )


@dataclass
class EvaluationResult:
    score: int
    issues: list[AiIssue] = field(default_factory=list)


def _coerce_score(value: Any) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(num):
        return 0
    if math.isinf(num):
        return 100 if num > 0 else 0
    return max(0, min(100, round_half_up(num)))


def _coerce_issues(value: Any) -> list[AiIssue]:
    if not isinstance(value, list):
        return []
    return [AiIssue.from_raw(item) for item in value if isinstance(item, dict)]


def parse_evaluation(text: str) -> EvaluationResult:
    """Parse a raw model reply into an :class:`EvaluationResult`.

    The first balanced JSON object in *text* is used, so fenced code blocks and
    chatty preambles are tolerated. No JSON object at all is an error; a
    missing or out-of-range score is clamped and a malformed ``issues`` field
    becomes an empty list.
    """
    blob = extract_json_object(text or "")
    if blob is None:
        raise LLMCallError(f"AI response did not contain valid JSON: {(text or '')[:200]}")
    try:
        parsed = json.loads(blob)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"AI returned invalid JSON: {blob[:200]}") from exc
    return EvaluationResult(
        score=_coerce_score(parsed.get("score")),
        issues=_coerce_issues(parsed.get("issues")),
    )


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = (provider or "anthropic").strip().lower()
        if self.provider == "claude":
            self.provider = "anthropic"
        self.model = model or ""
        self._api_key = api_key or None
        self._base_url = base_url or None
        self._client: Any = None
        self._init_client()

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMClient:
        return cls(
            provider=settings.llm_provider,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
        )

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-5"
            kwargs: dict[str, Any] = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, prompt: str) -> str:
        """Send a single user message and return the reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=2048,
                    messages=[{"role": "user", "content": prompt}],
                )
                return "".join(
                    getattr(block, "text", "") for block in response.content
                    if getattr(block, "type", "text") == "text"
                )
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def evaluate(self, prompt: str) -> EvaluationResult:
        text = await self.complete(prompt)
        result = parse_evaluation(text)
        log.debug("%s/%s scored %d with %d issues", self.provider, self.model, result.score, len(result.issues))
        return result


def coerce_evaluation(raw: Any) -> EvaluationResult:
    """Normalize whatever an evaluator returned into a clamped result."""
    if isinstance(raw, EvaluationResult):
        return EvaluationResult(score=_coerce_score(raw.score), issues=list(raw.issues))
    if isinstance(raw, dict):
        return EvaluationResult(
            score=_coerce_score(raw.get("score")),
            issues=_coerce_issues(raw.get("issues")),
        )
    raise LLMCallError(f"Evaluator returned unsupported result type {type(raw).__name__}")

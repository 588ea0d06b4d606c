"""Scoring engine: four sequential rubric evaluations with deterministic aggregation.

Architecture
------------
An audit compares a source and a target text on four fixed rubric
categories, always in this order:

- **accuracy**: meaning preserved, nothing mistranslated, added or dropped.
- **fluency**: grammatical, natural phrasing in the target language.
- **completeness**: no untranslated or missing strings.
- **tone**: register, voice and brand language match the source.

Each category is one LLM call. Calls run strictly one after another so that
progress is monotonic and at most one request is in flight per audit. If any
category fails the whole audit fails: a half-finished rubric is not an audit.

The category scores (0-100) are combined with the project's rubric weights:

- ``final_score`` = ``round(sum(score[c] * weight[c]) / sum(weight))``, halves
  rounded up, or 0 when all weights are zero.
- ``all_issues`` = every issue tagged with its category, in category order.

Progress is exposed as an async iterator of events (:func:`iter_audit`);
:func:`run_audit` drains it for callers that only want the result.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from locaudit.evaluator import AiIssue, EvaluationResult, coerce_evaluation
from locaudit.prompts import RUBRIC_CATEGORIES, build_category_prompt
from locaudit.utils import round_half_up

log = logging.getLogger(__name__)

PROGRESS_DONE = "done"

ProgressCallback = Callable[[str, int, int], None]


class Evaluator(Protocol):
    async def evaluate(self, prompt: str) -> EvaluationResult | dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Rubric aggregation
# ---------------------------------------------------------------------------


def normalize_rubric(raw: Mapping[str, Any] | None) -> dict[str, int]:
    """Return ``{category: weight}`` for the four categories in canonical order.

    Accepts flat weights (``{"accuracy": 40}``) and the nested form
    (``{"accuracy": {"weight": 40}}``). Missing categories weigh 0; unknown
    keys are ignored. Negative or non-integer weights raise ValueError.
    """
    raw = raw or {}
    weights: dict[str, int] = {}
    for category in RUBRIC_CATEGORIES:
        val = raw.get(category, 0)
        if isinstance(val, Mapping):
            val = val.get("weight", 0)
        if val is None:
            val = 0
        if isinstance(val, bool) or not isinstance(val, (int, float)) or val != int(val):
            raise ValueError(f"Weight for {category!r} must be an integer, got {val!r}")
        if val < 0:
            raise ValueError(f"Weight for {category!r} must be non-negative, got {val}")
        weights[category] = int(val)
    return weights


def compute_final_score(category_scores: Mapping[str, float], rubric: Mapping[str, Any]) -> int:
    """Weighted average of *category_scores*, 0 when the weights sum to zero."""
    weights = normalize_rubric(rubric)
    total_weight = sum(weights.values())
    if total_weight == 0:
        return 0
    weighted = sum(
        (category_scores.get(category) or 0) * weights[category]
        for category in RUBRIC_CATEGORIES
    )
    return round_half_up(weighted / total_weight)


# ---------------------------------------------------------------------------
# Audit data
# ---------------------------------------------------------------------------


@dataclass
class AuditInput:
    source_locale: str
    target_locale: str
    source_text: str
    target_text: str
    rubric: Mapping[str, Any]
    evaluator: Evaluator
    custom_rules: str = ""


@dataclass
class AuditProgress:
    """Emitted before each category starts, and once with ``PROGRESS_DONE`` at the end."""
    category: str
    done: int
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "progress", "category": self.category, "done": self.done, "total": self.total}


@dataclass
class CategoryResult:
    category: str
    score: int
    issues: list[AiIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "score": self.score,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class AuditResult:
    category_results: list[CategoryResult]
    category_scores: dict[str, int]
    final_score: int
    all_issues: list[dict[str, Any]]
    rubric_weights: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_results": [r.to_dict() for r in self.category_results],
            "category_scores": dict(self.category_scores),
            "final_score": self.final_score,
            "all_issues": [dict(i) for i in self.all_issues],
            "rubric_weights": dict(self.rubric_weights),
        }


def build_result(category_results: list[CategoryResult], rubric: Mapping[str, Any]) -> AuditResult:
    weights = normalize_rubric(rubric)
    category_scores = {r.category: r.score for r in category_results}
    all_issues = [
        {**issue.to_dict(), "category": r.category}
        for r in category_results
        for issue in r.issues
    ]
    return AuditResult(
        category_results=category_results,
        category_scores=category_scores,
        final_score=compute_final_score(category_scores, weights),
        all_issues=all_issues,
        rubric_weights=weights,
    )


# ---------------------------------------------------------------------------
# Run one audit (4 sequential category calls)
# ---------------------------------------------------------------------------


async def iter_audit(audit: AuditInput) -> AsyncIterator[AuditProgress | AuditResult]:
    """Evaluate every rubric category, yielding progress events then the result.

    The last item is always the :class:`AuditResult`. Any evaluator error
    propagates out of the iterator before a result is produced.
    """
    weights = normalize_rubric(audit.rubric)
    total = len(RUBRIC_CATEGORIES)
    results: list[CategoryResult] = []

    for idx, category in enumerate(RUBRIC_CATEGORIES):
        yield AuditProgress(category, idx, total)
        prompt = build_category_prompt(
            category,
            source_locale=audit.source_locale,
            target_locale=audit.target_locale,
            source_text=audit.source_text,
            target_text=audit.target_text,
            custom_rules=audit.custom_rules,
        )
        evaluation = coerce_evaluation(await audit.evaluator.evaluate(prompt))
        results.append(CategoryResult(category, evaluation.score, evaluation.issues))
        log.debug("Category %s scored %d (%d issues)", category, evaluation.score, len(evaluation.issues))

    yield AuditProgress(PROGRESS_DONE, total, total)
    yield build_result(results, weights)


async def run_audit(audit: AuditInput, on_progress: ProgressCallback | None = None) -> AuditResult:
    """Run a full audit and return its result, forwarding progress to *on_progress*."""
    result: AuditResult | None = None
    async for event in iter_audit(audit):
        if isinstance(event, AuditProgress):
            if on_progress is not None:
                on_progress(event.category, event.done, event.total)
        else:
            result = event
    if result is None:
        raise RuntimeError("Audit finished without producing a result")
    return result


def recompute_final_score(category_results: list[dict[str, Any]], rubric_weights: Mapping[str, Any]) -> int:
    """Recompute a stored audit's final score from its category results and weight snapshot."""
    scores = {r.get("category"): r.get("score") or 0 for r in category_results if isinstance(r, dict)}
    return compute_final_score(scores, rubric_weights)

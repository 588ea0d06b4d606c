"""Rubric categories and the per-category evaluation prompt."""
from __future__ import annotations

# Canonical order: evaluation, progress reporting and aggregation all follow it.
RUBRIC_CATEGORIES: tuple[str, ...] = ("accuracy", "fluency", "completeness", "tone")

CATEGORY_DESCRIPTIONS: dict[str, str] = {
    "accuracy": (
        "Does the target text convey exactly the same meaning as the source? "
        "Flag any mistranslations, omissions, or additions of meaning."
    ),
    "fluency": (
        "Does the target text read naturally and grammatically in the target language? "
        "Flag unnatural phrasing, grammar errors, or awkward constructions."
    ),
    "completeness": (
        "Are all source strings present in the target? Flag any untranslated strings, "
        "placeholder text left in the source language, or missing content."
    ),
    "tone": (
        "Does the target text match the tone and style of the source (formality, voice, "
        "brand language)? Flag mismatches in register or style."
    ),
}

_RESPONSE_SCHEMA = """\
Respond ONLY with a JSON object matching this exact schema:
{
  "score": <integer 0-100>,
  "issues": [
    {
      "original_text": "<exact source phrase>",
      "translated_text": "<exact target phrase as found>",
      "reason": "<why this is an issue>",
      "suggestion": "<improved translation>",
      "severity": "low" | "medium" | "high"
    }
  ]
}

Return an empty issues array if no problems found. Do not include any text outside the JSON."""


def build_category_prompt(
    category: str,
    source_locale: str,
    target_locale: str,
    source_text: str,
    target_text: str,
    custom_rules: str = "",
) -> str:
    """Assemble the evaluation prompt for one rubric category.

    The custom rules block is left out entirely when *custom_rules* is blank.
    """
    if category not in CATEGORY_DESCRIPTIONS:
        raise ValueError(f"Unknown rubric category: {category!r}")

    sections = [
        "You are a professional translation quality evaluator.",
        "",
        f"Source language: {source_locale}",
        f"Target language: {target_locale}",
        "",
        f"Evaluation focus: {category.upper()}: {CATEGORY_DESCRIPTIONS[category]}",
        "",
        "Source text:",
        source_text,
        "",
        "Target text:",
        target_text,
        "",
    ]
    rules = (custom_rules or "").strip()
    if rules:
        sections += ["Custom rules to enforce:", rules, ""]
    sections.append(_RESPONSE_SCHEMA)
    return "\n".join(sections)

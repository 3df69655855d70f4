"""Pedagogy policy variants and their task templates, loaded from JSON files."""
from __future__ import annotations

import json
import string
from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent

# Placeholders each template must be able to fill.
TEMPLATE_FIELDS: Mapping[str, FrozenSet[str]] = {
    "context_template": frozenset(
        {"subject", "difficulty", "content", "options_block", "answer_block", "correct_answer", "explanation"}
    ),
    "hint_template": frozenset({"content", "correct_answer"}),
    "evaluation_template": frozenset({"content", "options_block", "correct_answer", "user_answer", "explanation"}),
}


@dataclass(frozen=True)
class MasterPrompt:
    """One Socratic policy plus the context, hint and evaluation templates that go with it."""

    id: str
    variant: str
    prompt_version: str
    label: str
    description: str
    policy: str
    context_template: str
    hint_template: str
    evaluation_template: str
    examiner_system: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.strip().lower()

    def render_context(self, **values: str) -> str:
        return self.context_template.format(**values)

    def render_hint(self, **values: str) -> str:
        return self.hint_template.format(**values)

    def render_evaluation(self, **values: str) -> str:
        return self.evaluation_template.format(**values)


def _placeholders(template: str) -> set[str]:
    return {name for _, name, _, _ in string.Formatter().parse(template) if name}


def _check_templates(prompt: MasterPrompt, source: str) -> None:
    for attr, allowed in TEMPLATE_FIELDS.items():
        used = _placeholders(getattr(prompt, attr))
        unknown = used - allowed
        if unknown:
            raise ValueError(f"{source}: {attr} uses unknown placeholders {sorted(unknown)}")


def _parse_prompt(path: Path) -> MasterPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Prompt file {path.name} must hold a JSON object")
    names = [f.name for f in fields(MasterPrompt)]
    missing = [name for name in names if name not in payload]
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    prompt = MasterPrompt(**{name: str(payload[name]) for name in names})
    _check_templates(prompt, path.name)
    return prompt


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, MasterPrompt]:
    """Return every variant in ``directory`` keyed by its lower-cased name."""
    base_dir = Path(directory) if directory else _PROMPT_DIR
    variants: Dict[str, MasterPrompt] = {}
    for file_path in sorted(p for p in base_dir.glob("*.json") if p.is_file()):
        prompt = _parse_prompt(file_path)
        if prompt.normalized_variant in variants:
            raise ValueError(f"Variant '{prompt.variant}' is defined twice ({file_path.name})")
        variants[prompt.normalized_variant] = prompt
    if not variants:
        raise RuntimeError(f"No pedagogy prompt variants found in {base_dir}")
    return variants


def get_prompt(variant: str | None) -> MasterPrompt:
    variants = load_prompts()
    if not variant:
        return next(iter(variants.values()))
    try:
        return variants[variant.strip().lower()]
    except KeyError:
        raise KeyError(f"Unknown prompt variant '{variant}'. Available: {', '.join(sorted(variants))}") from None


__all__ = ["MasterPrompt", "TEMPLATE_FIELDS", "load_prompts", "get_prompt"]

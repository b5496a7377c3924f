"""Build the text prompts passed to the agent for each pipeline phase."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import PipelineConfig
from .constants import (
    PLAN_FILE,
    PROGRESS_LOG_FILE,
    PROMPTS_DIR,
    REQUIREMENTS_DOC_FILE,
    RESEARCH_FILE,
    STATE_DIR_NAME,
)
from .errors import StorageError, TemplateError
from .models import Item, SubTask

_IF_RE = re.compile(r"\{\{#if\s+(\w+)\}\}([\s\S]*?)\{\{/if\}\}")
_IFNOT_RE = re.compile(r"\{\{#ifnot\s+(\w+)\}\}([\s\S]*?)\{\{/ifnot\}\}")
_VAR_RE = re.compile(r"\{\{(\w+)\}\}")


DEFAULT_RESEARCH_PROMPT = """Your task is to research the codebase for a new piece of work.

Item: {{id}} - {{title}}
{{#if section}}Section: {{section}}
{{/if}}
Overview:
{{overview}}
{{#if problem_statement}}
Problem statement:
{{problem_statement}}
{{/if}}{{#if motivation}}
Motivation:
{{motivation}}
{{/if}}{{#if success_criteria}}
Success criteria:
- {{success_criteria}}
{{/if}}{{#if technical_constraints}}
Technical constraints:
- {{technical_constraints}}
{{/if}}{{#if scope_in_scope}}
In scope:
- {{scope_in_scope}}
{{/if}}{{#if scope_out_of_scope}}
Out of scope:
- {{scope_out_of_scope}}
{{/if}}
Read the relevant code and write your findings to {{item_path}}/research.md.
Cover the files involved, existing patterns to follow, risks and open questions.
Do not modify any source files.

When research.md is written, output {{completion_signal}}
"""

DEFAULT_PLAN_PROMPT = """Your task is to plan the implementation of {{id}} - {{title}}.

Overview:
{{overview}}
{{#if research}}
Research findings:
{{research}}
{{/if}}{{#ifnot research}}
No research document exists yet; inspect the code yourself before planning.
{{/ifnot}}
Write two files:
- {{item_path}}/plan.md: the implementation plan in prose.
- {{item_path}}/prd.json: a requirements document with this shape:
  {
    "schema_version": 1,
    "id": "{{id}}",
    "branch_name": "{{branch_name}}",
    "subtasks": [
      {"id": "T-001", "title": "...", "acceptance_criteria": ["..."],
       "priority": 1, "status": "pending", "notes": ""}
    ]
  }

Every sub-task must start as "pending". Include at least one sub-task.

When both files are written, output {{completion_signal}}
"""

DEFAULT_IMPLEMENT_PROMPT = """Your task is to implement one sub-task of {{id}} - {{title}}.

You are on branch {{branch_name}} (base: {{base_branch}}).

Current sub-task: {{subtask_id}} - {{subtask_title}}
{{#if subtask_acceptance_criteria}}Acceptance criteria:
- {{subtask_acceptance_criteria}}
{{/if}}
{{#if plan}}
Plan:
{{plan}}
{{/if}}{{#if prd}}
Requirements document ({{item_path}}/prd.json):
{{prd}}
{{/if}}{{#if progress}}
Progress so far:
{{progress}}
{{/if}}
Implement only this sub-task, run the tests, and commit your work.
Then set the sub-task's "status" to "done" in {{item_path}}/prd.json and
append a line describing what you did to {{item_path}}/progress.log.

When the sub-task is complete, output {{completion_signal}}
"""

DEFAULT_PR_PROMPT = """Write the description for a review request for {{id}} - {{title}}.

Branch {{branch_name}} will be merged into {{base_branch}}.
{{#if plan}}
Plan:
{{plan}}
{{/if}}{{#if progress}}
Progress log:
{{progress}}
{{/if}}
Output a short summary of the change followed by a testing section.

When finished, output {{completion_signal}}
"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "research": DEFAULT_RESEARCH_PROMPT,
    "plan": DEFAULT_PLAN_PROMPT,
    "implement": DEFAULT_IMPLEMENT_PROMPT,
    "pr": DEFAULT_PR_PROMPT,
}


def load_prompt_template(root: Path, name: str) -> str:
    """Return the template for ``name``, preferring a repository override.

    Overrides live in ``.prd_pipeline/prompts/<name>.md``.

    Raises:
        TemplateError: If the override is unreadable or ``name`` is unknown.
    """
    custom_path = root / STATE_DIR_NAME / PROMPTS_DIR / f"{name}.md"
    if custom_path.exists():
        try:
            return custom_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TemplateError(f"Cannot read template {custom_path}: {exc}") from exc
    try:
        return DEFAULT_TEMPLATES[name]
    except KeyError:
        raise TemplateError(f"Unknown prompt template: {name}") from None


def render_prompt(template: str, variables: dict[str, str]) -> str:
    """Render ``{{var}}``, ``{{#if var}}`` and ``{{#ifnot var}}`` blocks.

    A variable counts as set when it is present and non-empty. Unknown
    variables render as the empty string.
    """

    def _if(match: re.Match) -> str:
        return match.group(2) if variables.get(match.group(1)) else ""

    def _ifnot(match: re.Match) -> str:
        return "" if variables.get(match.group(1)) else match.group(2)

    result = _IF_RE.sub(_if, template)
    result = _IFNOT_RE.sub(_ifnot, result)
    return _VAR_RE.sub(lambda m: variables.get(m.group(1), ""), result)


def _join_list(values: Optional[tuple[str, ...]]) -> str:
    if not values:
        return ""
    return "\n- ".join(values)


@dataclass(frozen=True)
class PromptVariables:
    id: str
    title: str
    section: str = ""
    overview: str = ""
    item_path: str = ""
    branch_name: str = ""
    base_branch: str = ""
    completion_signal: str = ""
    research: Optional[str] = None
    plan: Optional[str] = None
    prd: Optional[str] = None
    progress: Optional[str] = None
    problem_statement: Optional[str] = None
    motivation: Optional[str] = None
    success_criteria: Optional[tuple[str, ...]] = None
    technical_constraints: Optional[tuple[str, ...]] = None
    scope_in_scope: Optional[tuple[str, ...]] = None
    scope_out_of_scope: Optional[tuple[str, ...]] = None
    extra: dict[str, str] = field(default_factory=dict)

    def to_map(self) -> dict[str, str]:
        values = {
            "id": self.id,
            "title": self.title,
            "section": self.section,
            "overview": self.overview,
            "item_path": self.item_path,
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "completion_signal": self.completion_signal,
            "research": self.research or "",
            "plan": self.plan or "",
            "prd": self.prd or "",
            "progress": self.progress or "",
            "problem_statement": self.problem_statement or "",
            "motivation": self.motivation or "",
            "success_criteria": _join_list(self.success_criteria),
            "technical_constraints": _join_list(self.technical_constraints),
            "scope_in_scope": _join_list(self.scope_in_scope),
            "scope_out_of_scope": _join_list(self.scope_out_of_scope),
        }
        values.update(self.extra)
        return values


def branch_name_for(item: Item, config: PipelineConfig) -> str:
    return item.branch or f"{config.branch_prefix}{item.id}"


def build_prompt_variables(
    item: Item,
    store,
    config: PipelineConfig,
    subtask: Optional[SubTask] = None,
) -> PromptVariables:
    """Collect template variables for ``item`` from the store's artifacts."""

    def _artifact(name: str) -> Optional[str]:
        try:
            return store.read_artifact(item.id, name)
        except StorageError:
            return None

    item_path = store.item_path(item.id)
    extra: dict[str, str] = {}
    if subtask is not None:
        extra = {
            "subtask_id": subtask.id,
            "subtask_title": subtask.title,
            "subtask_acceptance_criteria": _join_list(subtask.acceptance_criteria),
        }
    return PromptVariables(
        id=item.id,
        title=item.title,
        section=item.section or "",
        overview=item.overview,
        item_path=str(item_path) if item_path is not None else "",
        branch_name=branch_name_for(item, config),
        base_branch=config.base_branch,
        completion_signal=config.agent.completion_signal,
        research=_artifact(RESEARCH_FILE),
        plan=_artifact(PLAN_FILE),
        prd=_artifact(REQUIREMENTS_DOC_FILE),
        progress=_artifact(PROGRESS_LOG_FILE),
        problem_statement=item.problem_statement,
        motivation=item.motivation,
        success_criteria=item.success_criteria,
        technical_constraints=item.technical_constraints,
        scope_in_scope=item.scope_in_scope,
        scope_out_of_scope=item.scope_out_of_scope,
        extra=extra,
    )

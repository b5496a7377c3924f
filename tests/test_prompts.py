"""Test prompt template loading and rendering."""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from prd_pipeline.config import PipelineConfig
from prd_pipeline.constants import PROMPTS_DIR, RESEARCH_FILE, STATE_DIR_NAME
from prd_pipeline.errors import TemplateError
from prd_pipeline.models import Item, SubTask
from prd_pipeline.prompts import build_prompt_variables, load_prompt_template, render_prompt
from prd_pipeline.storage import FileItemStore, InMemoryItemStore


def test_simple_substitution() -> None:
    assert render_prompt("Hello {{name}} in {{place}}!", {"name": "Ada", "place": "London"}) == "Hello Ada in London!"


def test_unknown_variables_render_empty() -> None:
    assert render_prompt("[{{missing}}]", {}) == "[]"


def test_if_and_ifnot_blocks() -> None:
    template = "Start{{#if research}}\nResearch: {{research}}{{/if}}{{#ifnot research}}\nNo research{{/ifnot}}\nEnd"
    assert render_prompt(template, {"research": "found"}) == "Start\nResearch: found\nEnd"
    assert render_prompt(template, {"research": ""}) == "Start\nNo research\nEnd"
    assert render_prompt(template, {}) == "Start\nNo research\nEnd"


@pytest.mark.parametrize("name", ["research", "plan", "implement", "pr"])
def test_bundled_templates_exist(tmp_path: Path, name: str) -> None:
    template = load_prompt_template(tmp_path, name)
    assert "{{completion_signal}}" in template


def test_custom_template_overrides_bundled(tmp_path: Path) -> None:
    custom = tmp_path / STATE_DIR_NAME / PROMPTS_DIR / "research.md"
    custom.parent.mkdir(parents=True)
    custom.write_text("custom {{id}}", encoding="utf-8")
    assert load_prompt_template(tmp_path, "research") == "custom {{id}}"


def test_unknown_template_raises(tmp_path: Path) -> None:
    with pytest.raises(TemplateError):
        load_prompt_template(tmp_path, "deploy")


def test_build_prompt_variables_reads_artifacts(tmp_path: Path) -> None:
    store = FileItemStore(tmp_path)
    item = dataclasses.replace(
        Item.new("001-demo", "Demo", "Make it fast"),
        success_criteria=("p99 < 50ms", "no regressions"),
    )
    store.write_item(item)
    store.write_artifact(item.id, RESEARCH_FILE, "findings")
    values = build_prompt_variables(item, store, PipelineConfig()).to_map()
    assert values["id"] == "001-demo"
    assert values["research"] == "findings"
    assert values["plan"] == ""
    assert values["branch_name"] == "prd/001-demo"
    assert values["base_branch"] == "main"
    assert values["success_criteria"] == "p99 < 50ms\n- no regressions"
    assert values["item_path"] == str(store.item_path(item.id))


def test_rendered_research_prompt_mentions_item() -> None:
    store = InMemoryItemStore()
    item = Item.new("001-demo", "Demo", "Make it fast")
    variables = build_prompt_variables(item, store, PipelineConfig())
    prompt = render_prompt(load_prompt_template(Path("/nonexistent"), "research"), variables.to_map())
    assert "001-demo - Demo" in prompt
    assert "Make it fast" in prompt
    assert "<promise>COMPLETE</promise>" in prompt
    assert "Problem statement" not in prompt


def test_subtask_variables() -> None:
    store = InMemoryItemStore()
    item = Item.new("001-demo", "Demo")
    subtask = SubTask(id="T-002", title="Wire it up", acceptance_criteria=("works",))
    values = build_prompt_variables(item, store, PipelineConfig(), subtask=subtask).to_map()
    assert values["subtask_id"] == "T-002"
    assert values["subtask_acceptance_criteria"] == "works"

#!/usr/bin/env python3
"""Test the `prd-pipeline` CLI subcommands end to end against a temp repo."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from prd_pipeline import orchestrator as orchestrator_module
from prd_pipeline import runner
from prd_pipeline.constants import CONFIG_FILE, INDEX_FILE, RESEARCH_FILE, STATE_DIR_NAME
from prd_pipeline.storage import FileItemStore
from prd_pipeline.worker import WorkerResult


def _main(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        runner.main(argv)
    return int(excinfo.value.code or 0)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    (tmp_path / ".git").mkdir()
    assert _main(["init", "--cwd", str(tmp_path)]) == 0
    return tmp_path


def _add_ideas(repo: Path, text: str) -> None:
    ideas_file = repo / "ideas.md"
    ideas_file.write_text(text, encoding="utf-8")
    assert _main(["ideas", "--cwd", str(repo), "--file", str(ideas_file)]) == 0


def test_init_creates_state_dir(capsys: pytest.CaptureFixture[str], repo: Path) -> None:
    assert (repo / STATE_DIR_NAME / CONFIG_FILE).exists()
    assert (repo / STATE_DIR_NAME / INDEX_FILE).exists()
    assert (repo / STATE_DIR_NAME / "items").is_dir()
    assert "Initialized" in capsys.readouterr().out


def test_init_outside_git_repo_fails(tmp_path: Path) -> None:
    assert _main(["init", "--cwd", str(tmp_path)]) == 1
    assert not (tmp_path / STATE_DIR_NAME).exists()


def test_commands_require_init(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    assert _main(["status", "--cwd", str(tmp_path)]) == 1


def test_ideas_then_list_json(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _add_ideas(repo, "- Add dark mode\n- Export to CSV\n")
    capsys.readouterr()
    assert _main(["list", "--cwd", str(repo), "--json"]) == 0
    items = json.loads(capsys.readouterr().out)
    assert [item["id"] for item in items] == ["001-add-dark-mode", "002-export-to-csv"]
    assert {item["state"] for item in items} == {"idea"}


def test_ideas_dry_run_creates_nothing(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ideas_file = repo / "ideas.md"
    ideas_file.write_text("- Add dark mode\n", encoding="utf-8")
    assert _main(["ideas", "--cwd", str(repo), "--file", str(ideas_file), "--dry-run"]) == 0
    assert "would create: Add dark mode" in capsys.readouterr().out
    assert FileItemStore(repo).list_items() == []


def test_list_filters_by_state(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _add_ideas(repo, "- One\n")
    capsys.readouterr()
    assert _main(["list", "--cwd", str(repo), "--state", "planned", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_list_rejects_unknown_state(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(["list", "--cwd", str(repo), "--state", "shipped"]) == 2
    assert "Unknown state 'shipped'" in capsys.readouterr().err


def test_show_json(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _add_ideas(repo, "- Add dark mode\n")
    capsys.readouterr()
    assert _main(["show", "001-add-dark-mode", "--cwd", str(repo), "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["item"]["title"] == "Add dark mode"
    assert payload["artifacts"][RESEARCH_FILE] is False
    assert payload["requirements_doc"] is None


def test_show_unknown_item(repo: Path) -> None:
    assert _main(["show", "404", "--cwd", str(repo)]) == 1


def test_status_json(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _add_ideas(repo, "- One\n- Two\n")
    capsys.readouterr()
    assert _main(["status", "--cwd", str(repo), "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["total"] == 2
    assert payload["by_state"]["idea"] == 2
    assert payload["by_state"]["done"] == 0
    assert payload["next_item"] == "001-one"


def test_next_with_no_items(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(["next", "--cwd", str(repo)]) == 0
    assert "All items are done." in capsys.readouterr().out


class TestPhaseCommands:
    @pytest.fixture(autouse=True)
    def fake_agent(self, repo: Path, monkeypatch: pytest.MonkeyPatch) -> list[str]:
        prompts: list[str] = []

        def _fake(agent, prompt, cwd, timeout, dry_run):
            prompts.append(prompt)
            if dry_run:
                return WorkerResult(True, agent.completion_signal, True, 0)
            item_dir = cwd / STATE_DIR_NAME / "items" / "001-add-dark-mode"
            (item_dir / RESEARCH_FILE).write_text("# Research\n", encoding="utf-8")
            return WorkerResult(True, agent.completion_signal, True, 0)

        monkeypatch.setattr(orchestrator_module, "run_agent", _fake)
        _add_ideas(repo, "- Add dark mode\n")
        return prompts

    def test_research_advances_item(self, repo: Path, fake_agent: list[str]) -> None:
        assert _main(["research", "001-add-dark-mode", "--cwd", str(repo)]) == 0
        assert FileItemStore(repo).read_item("001-add-dark-mode").state.value == "researched"
        assert len(fake_agent) == 1
        assert "001-add-dark-mode - Add dark mode" in fake_agent[0]

    def test_out_of_order_phase_is_rejected(self, repo: Path, fake_agent: list[str]) -> None:
        assert _main(["plan", "001-add-dark-mode", "--cwd", str(repo)]) == 1
        assert FileItemStore(repo).read_item("001-add-dark-mode").state.value == "idea"
        assert fake_agent == []

    def test_dry_run_leaves_item_untouched(self, repo: Path, fake_agent: list[str]) -> None:
        before = FileItemStore(repo).read_item("001-add-dark-mode")
        assert _main(["research", "001-add-dark-mode", "--cwd", str(repo), "--dry-run"]) == 1
        assert FileItemStore(repo).read_item("001-add-dark-mode") == before


def test_doctor_fixes_stale_index(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _add_ideas(repo, "- One\n")
    (repo / STATE_DIR_NAME / INDEX_FILE).write_text(json.dumps({"items": []}), encoding="utf-8")
    capsys.readouterr()
    assert _main(["doctor", "--cwd", str(repo), "--json"]) == 1
    report = json.loads(capsys.readouterr().out)
    assert [f["code"] for f in report["findings"]] == ["stale_index"]

    assert _main(["doctor", "--cwd", str(repo), "--fix", "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["fixed"] == 1
    assert _main(["doctor", "--cwd", str(repo)]) == 0
    assert "No issues found" in capsys.readouterr().out

"""Drive items through the pipeline one phase at a time.

A phase run loads the item under its lock, lets the phase produce artifacts
(by running the agent, or through git for the phases that have no agent
template), re-observes every artifact into a fresh ``EvidenceSnapshot`` and
hands both to ``transition_to``. The updated item is built in memory and
written exactly once at the end, so an interrupted phase leaves the stored
item untouched.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import AgentConfig, PipelineConfig
from .constants import PLAN_FILE, RESEARCH_FILE
from .errors import (
    AlreadyTerminal,
    GitError,
    Interrupted,
    IterationBudgetExceeded,
    NonAdjacentTransition,
    PipelineError,
    StorageError,
    TemplateError,
    WorkerFailed,
)
from .git_utils import GitClient, ReviewRequestInfo
from .models import Item, SubTask, WorkflowState
from .prompts import branch_name_for, build_prompt_variables, load_prompt_template, render_prompt
from .storage import ItemStore
from .transitions import transition_to
from .utils import _parse_iso
from .validation import EvidenceSnapshot
from .worker import WorkerResult, run_agent

WorkerFn = Callable[[AgentConfig, str, Path, int, bool], WorkerResult]


class Phase(str, Enum):
    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    COMPLETE = "complete"

    @property
    def source_state(self) -> WorkflowState:
        return _PHASE_SOURCE[self]

    @property
    def target_state(self) -> WorkflowState:
        return _PHASE_TARGET[self]

    @property
    def template(self) -> Optional[str]:
        return _PHASE_TEMPLATE[self]


_PHASE_BY_STATE: dict[WorkflowState, Phase] = {
    WorkflowState.IDEA: Phase.RESEARCH,
    WorkflowState.RESEARCHED: Phase.PLAN,
    WorkflowState.PLANNED: Phase.IMPLEMENT,
    WorkflowState.IMPLEMENTING: Phase.REVIEW,
    WorkflowState.IN_REVIEW: Phase.COMPLETE,
}
_PHASE_SOURCE: dict[Phase, WorkflowState] = {phase: state for state, phase in _PHASE_BY_STATE.items()}
_PHASE_TARGET: dict[Phase, WorkflowState] = {
    Phase.RESEARCH: WorkflowState.RESEARCHED,
    Phase.PLAN: WorkflowState.PLANNED,
    Phase.IMPLEMENT: WorkflowState.IMPLEMENTING,
    Phase.REVIEW: WorkflowState.IN_REVIEW,
    Phase.COMPLETE: WorkflowState.DONE,
}
_PHASE_TEMPLATE: dict[Phase, Optional[str]] = {
    Phase.RESEARCH: "research",
    Phase.PLAN: "plan",
    Phase.IMPLEMENT: None,
    Phase.REVIEW: "implement",
    Phase.COMPLETE: None,
}
_REVIEW_STATES = (WorkflowState.IMPLEMENTING, WorkflowState.IN_REVIEW)
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def next_phase(item: Item) -> Optional[Phase]:
    """Return the phase that produces the item's successor state."""
    return _PHASE_BY_STATE.get(item.state)


def selection_key(item: Item) -> tuple[int, datetime, str]:
    """Sort key: highest priority hint, then earliest creation, then id.

    Creation times are compared as instants, so ``Z`` and ``+00:00`` spellings
    of the same moment sort together; unparseable ones sort first.
    """
    return (-item.priority_rank, _parse_iso(item.created_at) or _EARLIEST, item.id)


@dataclass(frozen=True)
class RunOptions:
    force: bool = False
    dry_run: bool = False
    max_iterations: Optional[int] = None
    timeout_seconds: Optional[int] = None
    max_workers: Optional[int] = None


@dataclass(frozen=True)
class PhaseOutcome:
    item_id: str
    phase: Optional[Phase]
    advanced: bool
    item: Optional[Item] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ItemRunResult:
    item_id: str
    final_state: Optional[WorkflowState]
    phases_run: int = 0
    error: Optional[PipelineError] = None


@dataclass
class OrchestrationResult:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def record(self, result: ItemRunResult) -> None:
        if result.final_state == WorkflowState.DONE:
            self.completed.append(result.item_id)
        elif result.error is None or isinstance(result.error, IterationBudgetExceeded):
            self.remaining.append(result.item_id)
        else:
            self.failed.append(result.item_id)
        if result.error is not None:
            self.errors[result.item_id] = str(result.error)


class Orchestrator:
    """Run phases for items held in ``store``.

    Args:
        store: Storage collaborator for items and artifacts.
        config: Pipeline configuration.
        root: Repository root; the agent runs here and prompt overrides are
            read from its state dir.
        git: Version-control collaborator; defaults to a ``GitClient`` on ``root``.
        worker: Callable used to run the agent; defaults to ``run_agent``.
    """

    def __init__(
        self,
        store: ItemStore,
        config: PipelineConfig,
        root: Path,
        *,
        git: Optional[GitClient] = None,
        worker: Optional[WorkerFn] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.root = root
        self.git = git if git is not None else GitClient(root)
        self.worker: WorkerFn = worker or run_agent

    # -- selection ----------------------------------------------------------

    def pending_items(self) -> list[Item]:
        """Non-done items in processing order, read fresh from the store."""
        items = [item for item in self.store.list_items() if not item.is_done()]
        return sorted(items, key=selection_key)

    # -- evidence -----------------------------------------------------------

    def _observe(self, item: Item) -> tuple[EvidenceSnapshot, Optional[ReviewRequestInfo]]:
        review: Optional[ReviewRequestInfo] = None
        if item.state in _REVIEW_STATES:
            review = self.git.find_review_request(branch_name_for(item, self.config))
        evidence = EvidenceSnapshot(
            has_research_doc=self.store.artifact_exists(item.id, RESEARCH_FILE),
            has_plan_doc=self.store.artifact_exists(item.id, PLAN_FILE),
            requirements_doc=self.store.read_requirements_doc(item.id),
            has_review_request=review is not None,
            review_request_merged=bool(review and review.merged),
        )
        return evidence, review

    def _artifacts_present(self, phase: Phase, item: Item) -> bool:
        if phase == Phase.RESEARCH:
            return self.store.artifact_exists(item.id, RESEARCH_FILE)
        if phase == Phase.PLAN:
            doc = self.store.read_requirements_doc(item.id)
            return self.store.artifact_exists(item.id, PLAN_FILE) and bool(doc and doc.subtasks)
        if phase == Phase.REVIEW:
            doc = self.store.read_requirements_doc(item.id)
            return bool(doc and doc.all_subtasks_done())
        return False

    # -- worker -------------------------------------------------------------

    def _run_worker(
        self,
        template_name: str,
        item: Item,
        options: RunOptions,
        subtask: Optional[SubTask] = None,
    ) -> WorkerResult:
        template = load_prompt_template(self.root, template_name)
        variables = build_prompt_variables(item, self.store, self.config, subtask=subtask)
        prompt = render_prompt(template, variables.to_map())
        timeout = options.timeout_seconds or self.config.timeout_seconds
        logger.info("Running {} agent for {}", template_name, item.id)
        result = self.worker(self.config.agent, prompt, self.root, timeout, options.dry_run)
        if not result.succeeded:
            if result.timed_out:
                cause = f"{template_name} agent timed out after {timeout}s"
            else:
                cause = f"{template_name} agent exited with status {result.exit_status}"
            logger.error("Item {}: {}", item.id, cause)
            if result.output_tail:
                logger.debug("Last agent output for {}:\n{}", item.id, result.output_tail)
            raise WorkerFailed(cause, timed_out=result.timed_out, exit_status=result.exit_status)
        return result

    # -- phases -------------------------------------------------------------

    def _execute_phase(self, phase: Phase, item: Item, options: RunOptions) -> Item:
        """Produce the phase's artifacts and return the in-memory item to validate."""
        template = phase.template
        if phase in (Phase.RESEARCH, Phase.PLAN) and template is not None:
            if self._artifacts_present(phase, item) and not options.force:
                logger.info("Item {}: {} artifacts present; skipping agent", item.id, phase.value)
                return item
            self._run_worker(template, item, options)
            return item
        if phase == Phase.IMPLEMENT:
            return self._ensure_branch(item)
        if phase == Phase.REVIEW:
            return self._run_review_phase(item, options)
        return item

    def _ensure_branch(self, item: Item) -> Item:
        if self.git.current_branch() != branch_name_for(item, self.config):
            preflight = self.git.preflight()
            if not preflight.valid:
                raise GitError(f"git preflight failed: {'; '.join(preflight.errors)}")
        branch = self.git.ensure_branch(self.config.base_branch, self.config.branch_prefix, item.id)
        if item.branch == branch:
            return item
        return item.with_branch(branch)

    def _run_review_phase(self, item: Item, options: RunOptions) -> Item:
        item = self._ensure_branch(item)
        budget = options.max_iterations or self.config.max_iterations
        doc = self.store.read_requirements_doc(item.id)
        if doc is None:
            return item

        runs = 0
        while doc is not None:
            subtask = doc.next_pending_subtask()
            if subtask is None:
                break
            if runs >= budget:
                raise IterationBudgetExceeded(budget)
            runs += 1
            logger.info("Item {}: implementing sub-task {} ({})", item.id, subtask.id, subtask.title)
            self._run_worker("implement", item, options, subtask=subtask)
            if options.dry_run:
                return item
            doc = self.store.read_requirements_doc(item.id)
            current = doc.get(subtask.id) if doc is not None else None
            if current is not None and current.is_pending():
                logger.warning("Item {}: sub-task {} is still pending after the agent run", item.id, subtask.id)
                return item

        if doc is None or not doc.all_subtasks_done():
            return item

        branch = branch_name_for(item, self.config)
        existing = self.git.find_review_request(branch)
        if existing is not None and not options.force:
            return item

        if self.git.has_uncommitted_changes():
            self.git.commit_all(f"{item.id}: {item.title}")
        self.git.push_branch(branch)
        result = self._run_worker("pr", item, options)
        body = result.raw_output.replace(self.config.agent.completion_signal, "").strip() or item.overview
        self.git.create_or_update_review_request(self.config.base_branch, branch, item.title, body)
        return item

    # -- phase run ----------------------------------------------------------

    def run_phase(
        self,
        item_id: str,
        options: Optional[RunOptions] = None,
        *,
        expected_phase: Optional[Phase] = None,
    ) -> PhaseOutcome:
        """Run the item's next phase and persist the outcome.

        Rejections and collaborator failures are returned in
        ``PhaseOutcome.error`` with the item's state unchanged and the reason
        stored in ``last_error``.

        Raises:
            StorageError: If the item cannot be read or written.
            Interrupted: If the run was cancelled; nothing is written.
        """
        options = options or RunOptions()
        try:
            with self.store.item_lock(item_id):
                return self._run_phase_locked(item_id, options, expected_phase)
        except KeyboardInterrupt:
            logger.warning("Item {}: phase run interrupted; stored item left unchanged", item_id)
            raise Interrupted() from None

    def _run_phase_locked(
        self,
        item_id: str,
        options: RunOptions,
        expected_phase: Optional[Phase],
    ) -> PhaseOutcome:
        item = self.store.read_item(item_id)
        phase = next_phase(item)
        if phase is None:
            return PhaseOutcome(item_id, None, False, item, AlreadyTerminal(item.state.value))
        if expected_phase is not None and expected_phase != phase:
            error = NonAdjacentTransition(item.state.value, expected_phase.target_state.value)
            logger.warning("Item {}: cannot run {} from state {}", item_id, expected_phase.value, item.state.value)
            return PhaseOutcome(item_id, expected_phase, False, item, error)

        logger.debug("Item {}: running phase {} from {}", item_id, phase.value, item.state.value)
        try:
            working = self._execute_phase(phase, item, options)
        except (WorkerFailed, GitError, TemplateError, IterationBudgetExceeded) as exc:
            return self._record_failure(item, phase, exc, options)

        evidence, review = self._observe(working)
        if review is not None and (working.review_url, working.review_number) != (review.url, review.number):
            working = working.with_review(review.url, review.number)

        candidate = working.with_error(None) if working.last_error else working
        result = transition_to(candidate, phase.target_state, evidence)
        if result.error is not None:
            return self._record_failure(working, phase, result.error, options)
        advanced = result.item
        if advanced is None:
            raise PipelineError(f"Transition for {item_id} produced no item")
        logger.info("Item {}: {} -> {}", item_id, item.state.value, advanced.state.value)
        if not options.dry_run:
            self.store.write_item(advanced)
            self.store.append_event(
                item_id,
                {"phase": phase.value, "from_state": item.state.value, "to_state": advanced.state.value},
            )
        return PhaseOutcome(item_id, phase, True, advanced, None)

    def _record_failure(
        self,
        item: Item,
        phase: Phase,
        error: PipelineError,
        options: RunOptions,
    ) -> PhaseOutcome:
        failed = item.with_error(str(error))
        if isinstance(error, WorkerFailed):
            logger.error("Item {}: {} phase failed: {}", item.id, phase.value, error)
        else:
            logger.warning("Item {}: {} phase rejected: {}", item.id, phase.value, error)
        if not options.dry_run:
            self.store.write_item(failed)
            self.store.append_event(
                item.id,
                {"phase": phase.value, "from_state": item.state.value, "error": str(error), "code": error.code},
            )
        return PhaseOutcome(item.id, phase, False, failed, error)

    # -- loops --------------------------------------------------------------

    def run_item(self, item_id: str, options: Optional[RunOptions] = None) -> ItemRunResult:
        """Run phases until the item is done, a phase fails, or the budget runs out.

        A dry run performs a single phase, since nothing it decides is stored.
        """
        options = options or RunOptions()
        budget = options.max_iterations or self.config.max_iterations
        phases_run = 0
        item = self.store.read_item(item_id)
        while not item.is_done():
            if phases_run >= budget:
                error = IterationBudgetExceeded(budget)
                logger.warning("Item {}: {}", item_id, error)
                return ItemRunResult(item_id, item.state, phases_run, error)
            outcome = self.run_phase(item_id, options)
            phases_run += 1
            if outcome.item is not None:
                item = outcome.item
            if outcome.error is not None:
                return ItemRunResult(item_id, item.state, phases_run, outcome.error)
            if options.dry_run:
                break
        return ItemRunResult(item_id, item.state, phases_run, None)

    def _run_item_safe(self, item_id: str, options: RunOptions) -> ItemRunResult:
        try:
            return self.run_item(item_id, options)
        except StorageError as exc:
            logger.error("Item {}: storage failure: {}", item_id, exc)
            return ItemRunResult(item_id, None, 0, exc)

    def orchestrate_next(self, options: Optional[RunOptions] = None) -> Optional[PhaseOutcome]:
        """Run one phase on the highest-priority item that is not done."""
        options = options or RunOptions()
        candidates = self.pending_items()
        if not candidates:
            logger.info("No items left to process")
            return None
        return self.run_phase(candidates[0].id, options)

    def orchestrate_all(self, options: Optional[RunOptions] = None) -> OrchestrationResult:
        """Run every item that is not done to completion, in priority order.

        At most ``max_workers`` distinct items run at once; ordering is
        recomputed whenever a slot frees up.
        """
        options = options or RunOptions()
        max_workers = max(1, options.max_workers or self.config.max_workers)
        summary = OrchestrationResult()
        attempted: set[str] = set()

        def _next_candidate() -> Optional[str]:
            for item in self.pending_items():
                if item.id not in attempted:
                    attempted.add(item.id)
                    return item.id
            return None

        if max_workers == 1:
            while True:
                item_id = _next_candidate()
                if item_id is None:
                    break
                summary.record(self._run_item_safe(item_id, options))
            return summary

        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures: dict[concurrent.futures.Future, str] = {}
            while True:
                while len(futures) < max_workers:
                    item_id = _next_candidate()
                    if item_id is None:
                        break
                    futures[executor.submit(self._run_item_safe, item_id, options)] = item_id
                if not futures:
                    break
                done, _ = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_COMPLETED)
                for future in done:
                    futures.pop(future)
                    summary.record(future.result())
        return summary

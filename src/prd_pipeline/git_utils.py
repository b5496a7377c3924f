"""Provide the git and review-request helpers used by the pipeline."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import GitError


@dataclass(frozen=True)
class ReviewRequestInfo:
    url: str
    number: int
    merged: bool = False


@dataclass(frozen=True)
class PreflightResult:
    valid: bool
    errors: tuple[str, ...] = field(default_factory=tuple)


def _parse_review_number(url: str) -> int:
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return 0


class GitClient:
    """Thin wrapper over ``git`` and ``gh`` run in ``cwd``.

    With ``dry_run`` set, mutating commands are logged instead of executed.
    """

    def __init__(self, cwd: Path, dry_run: bool = False) -> None:
        self.cwd = cwd
        self.dry_run = dry_run

    def _run(self, program: str, args: list[str], *, mutating: bool = True) -> str:
        if self.dry_run and mutating:
            logger.info("[dry-run] {} {}", program, " ".join(args))
            return ""
        try:
            result = subprocess.run(
                [program, *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise GitError(f"Unable to run {program}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise GitError(f"{program} {' '.join(args)} failed: {detail}")
        return result.stdout.strip()

    def _git(self, *args: str, mutating: bool = True) -> str:
        return self._run("git", list(args), mutating=mutating)

    def _gh(self, *args: str, mutating: bool = True) -> str:
        return self._run("gh", list(args), mutating=mutating)

    # -- queries ------------------------------------------------------------

    def is_repo(self) -> bool:
        try:
            return self._git("rev-parse", "--is-inside-work-tree", mutating=False).lower() == "true"
        except GitError:
            return False

    def current_branch(self) -> Optional[str]:
        try:
            return self._git("rev-parse", "--abbrev-ref", "HEAD", mutating=False) or None
        except GitError:
            return None

    def branch_exists(self, branch: str) -> bool:
        try:
            self._git("show-ref", "--verify", f"refs/heads/{branch}", mutating=False)
        except GitError:
            return False
        return True

    def has_uncommitted_changes(self) -> bool:
        try:
            return bool(self._git("status", "--porcelain", mutating=False))
        except GitError:
            # Assume changes when status cannot be read.
            return True

    # -- branch and commits -------------------------------------------------

    def ensure_branch(self, base_branch: str, branch_prefix: str, slug: str) -> str:
        """Check out ``<prefix><slug>``, creating it from ``base_branch`` if needed."""
        branch = f"{branch_prefix}{slug}"
        if self.current_branch() == branch:
            return branch
        if self.branch_exists(branch):
            self._git("checkout", branch)
        else:
            logger.info("Creating branch {} from {}", branch, base_branch)
            self._git("checkout", "-b", branch, base_branch)
        return branch

    def commit_all(self, message: str) -> None:
        self._git("add", "-A")
        self._git("commit", "-m", message)

    def push_branch(self, branch: str) -> None:
        if not branch:
            raise GitError("Branch is required to push")
        self._git("push", "-u", "origin", branch)

    # -- review requests ----------------------------------------------------

    def find_review_request(self, branch: str) -> Optional[ReviewRequestInfo]:
        """Return the open or merged review request for ``branch``, if any."""
        try:
            raw = self._gh("pr", "view", branch, "--json", "number,url,state", mutating=False)
        except GitError:
            return None
        try:
            data = json.loads(raw)
            return ReviewRequestInfo(
                url=str(data["url"]),
                number=int(data["number"]),
                merged=str(data.get("state") or "").upper() == "MERGED",
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Unexpected gh output for branch {}: {}", branch, raw[:200])
            return None

    def create_or_update_review_request(
        self,
        base_branch: str,
        head_branch: str,
        title: str,
        body: str,
    ) -> ReviewRequestInfo:
        existing = self.find_review_request(head_branch)
        if existing is not None:
            return existing
        url = self._gh(
            "pr",
            "create",
            "--base",
            base_branch,
            "--head",
            head_branch,
            "--title",
            title,
            "--body",
            body,
        ).strip()
        info = ReviewRequestInfo(url=url, number=_parse_review_number(url))
        logger.info("Opened review request {} for {}", info.url or "(dry-run)", head_branch)
        return info

    def preflight(self) -> PreflightResult:
        if not self.is_repo():
            return PreflightResult(valid=False, errors=("Not in a git repository",))
        errors: list[str] = []
        if self.current_branch() == "HEAD":
            errors.append("HEAD is detached")
        if self.has_uncommitted_changes():
            errors.append("There are uncommitted changes")
        return PreflightResult(valid=not errors, errors=tuple(errors))

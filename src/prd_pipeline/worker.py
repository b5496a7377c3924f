from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import AgentConfig
from .constants import EXIT_CODE_TIMEOUT, WORKER_OUTPUT_TAIL_CHARS, WORKER_TERMINATE_GRACE_SECONDS
from .errors import WorkerFailed


@dataclass(frozen=True)
class WorkerResult:
    succeeded: bool
    raw_output: str
    completion_detected: bool
    exit_status: Optional[int]
    timed_out: bool = False

    @property
    def output_tail(self) -> str:
        return self.raw_output[-WORKER_OUTPUT_TAIL_CHARS:]


def _stream_pipe(pipe: Any, sink: list[str], lock: threading.Lock) -> None:
    for line in iter(pipe.readline, ""):
        with lock:
            sink.append(line)
    try:
        pipe.close()
    except OSError:
        pass


def _stop_process(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=WORKER_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_agent(
    config: AgentConfig,
    prompt: str,
    cwd: Path,
    timeout_seconds: int,
    dry_run: bool = False,
) -> WorkerResult:
    """Run the configured agent with ``prompt`` on stdin.

    The process is terminated (then killed) once ``timeout_seconds`` elapse.
    A missing completion signal is reported but does not fail the run; the
    pipeline only trusts artifacts it observes afterwards.

    Raises:
        WorkerFailed: If the agent process cannot be started.
    """
    command_parts = [config.command, *config.args]
    if dry_run:
        logger.info("[dry-run] Would run agent: {}", " ".join(command_parts))
        return WorkerResult(
            succeeded=True,
            raw_output=f"[dry-run] {config.completion_signal}\n",
            completion_detected=True,
            exit_status=0,
        )

    logger.debug("Starting agent {} in {} (timeout={}s)", command_parts, cwd, timeout_seconds)
    try:
        process = subprocess.Popen(
            command_parts,
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except OSError as exc:
        raise WorkerFailed(f"Failed to start agent '{config.command}': {exc}") from exc

    output: list[str] = []
    output_lock = threading.Lock()
    reader = threading.Thread(target=_stream_pipe, args=(process.stdout, output, output_lock), daemon=True)
    reader.start()

    if process.stdin:
        try:
            process.stdin.write(prompt)
            process.stdin.flush()
            process.stdin.close()
        except BrokenPipeError:
            pass

    start_time = time.monotonic()
    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.error("Agent timed out after {}s; terminating", timeout_seconds)
        _stop_process(process)
    except KeyboardInterrupt:
        _stop_process(process)
        raise

    reader.join(timeout=WORKER_TERMINATE_GRACE_SECONDS)
    with output_lock:
        raw_output = "".join(output)

    exit_status = EXIT_CODE_TIMEOUT if timed_out else process.returncode
    completion_detected = config.completion_signal in raw_output
    succeeded = exit_status == 0 and not timed_out
    logger.debug(
        "Agent finished in {:.1f}s (exit={}, completion_signal={})",
        time.monotonic() - start_time,
        exit_status,
        completion_detected,
    )
    if succeeded and not completion_detected:
        logger.warning("Agent exited cleanly but did not emit the completion signal")
    return WorkerResult(
        succeeded=succeeded,
        raw_output=raw_output,
        completion_detected=completion_detected,
        exit_status=exit_status,
        timed_out=timed_out,
    )

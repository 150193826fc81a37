"""Persistence boundary for test runs and their child records.

:class:`RunStore` keeps everything in memory behind a re-entrant lock and
hands out copies so callers never mutate stored state directly.
:class:`JsonFileRunStore` adds a JSON snapshot on disk which is rewritten
atomically after every mutation and reloaded on start-up.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    NetworkRequest,
    StepResult,
    StepResultStatus,
    TestError,
    TestRun,
    TestRunStatus,
    TestStep,
    utcnow,
)

log = logging.getLogger(__name__)


class RunStore:
    """Thread-safe in-memory store for runs, step results, errors and network logs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: Dict[str, TestRun] = {}
        self._share_index: Dict[str, str] = {}
        self._step_results: Dict[str, List[StepResult]] = {}
        self._steps: Dict[str, Dict[str, TestStep]] = {}
        self._errors: Dict[str, List[TestError]] = {}
        self._network: Dict[str, List[NetworkRequest]] = {}

    # ------------------------------------------------------------------
    # runs
    # ------------------------------------------------------------------
    def create_run(self, run: TestRun) -> TestRun:
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"run {run.id} already exists")
            if run.share_token in self._share_index:
                raise ValueError("share token already in use")
            self._runs[run.id] = run.model_copy(deep=True)
            self._share_index[run.share_token] = run.id
            self._step_results[run.id] = []
            self._steps[run.id] = {}
            self._errors[run.id] = []
            self._network[run.id] = []
            self._persist()
            return run.model_copy(deep=True)

    def share_token_exists(self, token: str) -> bool:
        with self._lock:
            return token in self._share_index

    def get_run(self, run_id: str) -> Optional[TestRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def get_run_by_share_token(self, token: str) -> Optional[TestRun]:
        with self._lock:
            run_id = self._share_index.get(token)
            return self.get_run(run_id) if run_id else None

    def list_runs(self, test_file_id: str, *, limit: Optional[int] = None) -> List[TestRun]:
        """Runs of a test file, newest first."""

        with self._lock:
            runs = [run for run in self._runs.values() if run.test_file_id == test_file_id]
            runs.sort(key=lambda run: run.created_at, reverse=True)
            if limit is not None:
                runs = runs[: max(limit, 0)]
            return [run.model_copy(deep=True) for run in runs]

    def runs_with_status(self, *statuses: TestRunStatus) -> List[TestRun]:
        with self._lock:
            return [run.model_copy(deep=True) for run in self._runs.values() if run.status in statuses]

    def mark_running(self, run_id: str, *, started_at: Optional[datetime] = None) -> bool:
        """Move a PENDING run to RUNNING; False when the run already left PENDING."""

        with self._lock:
            run = self._require_run(run_id)
            if run.status is not TestRunStatus.PENDING:
                return False
            run.status = TestRunStatus.RUNNING
            run.started_at = started_at or utcnow()
            self._persist()
            return True

    def cancel_if_active(self, run_id: str, *, ended_at: Optional[datetime] = None) -> bool:
        """Set CANCELLED when the run is still PENDING or RUNNING."""

        with self._lock:
            run = self._require_run(run_id)
            if run.status.is_terminal:
                return False
            run.status = TestRunStatus.CANCELLED
            run.ended_at = ended_at or utcnow()
            self._persist()
            return True

    def finalize_run(
        self,
        run_id: str,
        status: TestRunStatus,
        *,
        ended_at: Optional[datetime] = None,
        video_url: Optional[str] = None,
    ) -> bool:
        """Write the terminal status of a run.

        A run that is already terminal keeps its status and ``endedAt``; only a
        missing ``videoUrl`` is filled in.  Returns whether the status was
        written.
        """

        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            run = self._require_run(run_id)
            if run.status.is_terminal:
                if video_url and not run.video_url:
                    run.video_url = video_url
                    self._persist()
                return False
            run.status = status
            run.ended_at = ended_at or utcnow()
            if video_url:
                run.video_url = video_url
            self._persist()
            return True

    def delete_run(self, run_id: str) -> bool:
        """Remove a run and cascade to all of its child records."""

        with self._lock:
            run = self._runs.pop(run_id, None)
            if run is None:
                return False
            self._share_index.pop(run.share_token, None)
            self._step_results.pop(run_id, None)
            self._steps.pop(run_id, None)
            self._errors.pop(run_id, None)
            self._network.pop(run_id, None)
            self._persist()
            return True

    def delete_runs_for_test_file(self, test_file_id: str) -> int:
        with self._lock:
            run_ids = [run.id for run in self._runs.values() if run.test_file_id == test_file_id]
            for run_id in run_ids:
                self.delete_run(run_id)
            return len(run_ids)

    # ------------------------------------------------------------------
    # step results
    # ------------------------------------------------------------------
    def create_step_results(self, run_id: str, steps: Iterable[TestStep]) -> List[StepResult]:
        """Create one PENDING result per step, keeping a snapshot of each step."""

        with self._lock:
            self._require_run(run_id)
            created: List[StepResult] = []
            for step in steps:
                result = StepResult(test_run_id=run_id, test_step_id=step.id)
                self._step_results[run_id].append(result)
                self._steps[run_id][step.id] = step.model_copy(deep=True)
                created.append(result.model_copy(deep=True))
            self._persist()
            return created

    def list_step_results(self, run_id: str) -> List[StepResult]:
        """Step results ordered by the step number of their step."""

        with self._lock:
            steps = self._steps.get(run_id, {})
            results = list(self._step_results.get(run_id, []))

            def _order(result: StepResult) -> int:
                step = steps.get(result.test_step_id)
                return step.step_number if step else 0

            results.sort(key=_order)
            return [result.model_copy(deep=True) for result in results]

    def list_steps(self, run_id: str) -> Dict[str, TestStep]:
        with self._lock:
            return {key: step.model_copy(deep=True) for key, step in self._steps.get(run_id, {}).items()}

    def find_step_result(self, run_id: str, test_step_id: str) -> Optional[StepResult]:
        with self._lock:
            for result in self._step_results.get(run_id, []):
                if result.test_step_id == test_step_id:
                    return result.model_copy(deep=True)
            return None

    def update_step_result(self, result_id: str, **fields: Any) -> StepResult:
        with self._lock:
            for results in self._step_results.values():
                for result in results:
                    if result.id != result_id:
                        continue
                    for name, value in fields.items():
                        if not hasattr(result, name):
                            raise AttributeError(f"StepResult has no field '{name}'")
                        setattr(result, name, value)
                    self._persist()
                    return result.model_copy(deep=True)
        raise KeyError(f"step result {result_id} not found")

    def skip_pending_step_results(self, run_id: str) -> int:
        with self._lock:
            count = 0
            for result in self._step_results.get(run_id, []):
                if result.status is StepResultStatus.PENDING:
                    result.status = StepResultStatus.SKIPPED
                    count += 1
            if count:
                self._persist()
            return count

    # ------------------------------------------------------------------
    # telemetry
    # ------------------------------------------------------------------
    def add_errors(self, run_id: str, errors: Iterable[TestError]) -> int:
        with self._lock:
            self._require_run(run_id)
            items = [error.model_copy(deep=True) for error in errors]
            self._errors[run_id].extend(items)
            if items:
                self._persist()
            return len(items)

    def list_errors(self, run_id: str) -> List[TestError]:
        with self._lock:
            errors = sorted(self._errors.get(run_id, []), key=lambda error: error.timestamp)
            return [error.model_copy(deep=True) for error in errors]

    def add_network_requests(self, run_id: str, requests: Iterable[NetworkRequest]) -> int:
        with self._lock:
            self._require_run(run_id)
            items = [request.model_copy(deep=True) for request in requests]
            self._network[run_id].extend(items)
            if items:
                self._persist()
            return len(items)

    def list_network_requests(self, run_id: str) -> List[NetworkRequest]:
        with self._lock:
            requests = sorted(self._network.get(run_id, []), key=lambda request: request.timestamp)
            return [request.model_copy(deep=True) for request in requests]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _require_run(self, run_id: str) -> TestRun:
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"run {run_id} not found")
        return run

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "runs": [run.model_dump(mode="json", by_alias=True) for run in self._runs.values()],
                "stepResults": {
                    run_id: [item.model_dump(mode="json", by_alias=True) for item in items]
                    for run_id, items in self._step_results.items()
                },
                "steps": {
                    run_id: [step.model_dump(mode="json", by_alias=True) for step in steps.values()]
                    for run_id, steps in self._steps.items()
                },
                "errors": {
                    run_id: [item.model_dump(mode="json", by_alias=True) for item in items]
                    for run_id, items in self._errors.items()
                },
                "networkRequests": {
                    run_id: [item.model_dump(mode="json", by_alias=True) for item in items]
                    for run_id, items in self._network.items()
                },
            }

    def restore(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self._runs = {}
            self._share_index = {}
            for raw in data.get("runs", []):
                run = TestRun.model_validate(raw)
                self._runs[run.id] = run
                self._share_index[run.share_token] = run.id
            self._step_results = {
                run_id: [StepResult.model_validate(item) for item in items]
                for run_id, items in data.get("stepResults", {}).items()
            }
            self._steps = {}
            for run_id, items in data.get("steps", {}).items():
                steps = [TestStep.model_validate(item) for item in items]
                self._steps[run_id] = {step.id: step for step in steps}
            self._errors = {
                run_id: [TestError.model_validate(item) for item in items]
                for run_id, items in data.get("errors", {}).items()
            }
            self._network = {
                run_id: [NetworkRequest.model_validate(item) for item in items]
                for run_id, items in data.get("networkRequests", {}).items()
            }
            for run_id in self._runs:
                self._step_results.setdefault(run_id, [])
                self._steps.setdefault(run_id, {})
                self._errors.setdefault(run_id, [])
                self._network.setdefault(run_id, [])


class JsonFileRunStore(RunStore):
    """RunStore persisted to a JSON file on every mutation."""

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self.path = Path(path)
        self._loading = False
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            log.error("Failed to read run store %s: %s", self.path, exc)
            raise
        if not content:
            return
        try:
            data = json.loads(content)
        except ValueError as exc:
            backup = self.path.with_name(self.path.name + ".corrupted.bak")
            log.error("Run store %s is not valid JSON (%s); moving it to %s", self.path, exc, backup)
            os.replace(self.path, backup)
            return
        self._loading = True
        try:
            self.restore(data)
        finally:
            self._loading = False
        log.info("Loaded %d runs from %s", len(self._runs), self.path)

    def _persist(self) -> None:
        if self._loading:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_name(self.path.name + ".tmp")
        try:
            with temp_file.open("w", encoding="utf-8") as fh:
                json.dump(self.snapshot(), fh, ensure_ascii=False)
            os.replace(temp_file, self.path)
        except OSError:
            try:
                temp_file.unlink()
            except OSError:
                pass
            raise

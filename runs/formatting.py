"""Client-facing shape of a test run, as served to pollers and share pages."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import NetworkRequest, StepResult, TestError, TestRun, TestStep


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def compute_progress(results: Sequence[StepResult]) -> int:
    """Percentage of step results that reached PASSED, FAILED or SKIPPED."""

    total = len(results)
    if total == 0:
        return 0
    completed = sum(1 for result in results if result.status.is_completed)
    return round(completed * 100 / total)


def format_step_result(result: StepResult, step: Optional[TestStep]) -> Dict[str, Any]:
    return {
        "id": result.id,
        "status": result.status.value,
        "duration": result.duration,
        "error": result.error,
        "screenshotUrl": result.screenshot_url,
        "locatorUsed": result.locator_used,
        "testStepId": result.test_step_id,
        "stepNumber": step.step_number if step else None,
        "action": step.action if step else None,
        "description": step.description if step else None,
    }


def format_error(error: TestError) -> Dict[str, Any]:
    return {
        "id": error.id,
        "type": error.type.value,
        "message": error.message,
        "stack": error.stack,
        "url": error.url,
        "timestamp": _iso(error.timestamp),
        "context": error.context,
    }


def format_network_request(request: NetworkRequest) -> Dict[str, Any]:
    return request.model_dump(mode="json", by_alias=True, exclude={"test_run_id"})


def format_run(
    run: TestRun,
    results: Sequence[StepResult],
    steps: Mapping[str, TestStep],
    errors: Sequence[TestError] = (),
    network: Sequence[NetworkRequest] = (),
    test_file_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the polled representation of *run*.

    *results* are expected in step order; *steps* maps step ids to the step
    snapshot taken when the run was created.
    """

    ordered: List[StepResult] = sorted(
        results,
        key=lambda result: steps[result.test_step_id].step_number if result.test_step_id in steps else 0,
    )
    return {
        "id": run.id,
        "status": run.status.value,
        "startedAt": _iso(run.started_at),
        "endedAt": _iso(run.ended_at),
        "videoUrl": run.video_url,
        "shareToken": run.share_token,
        "createdAt": _iso(run.created_at),
        "testFileId": run.test_file_id,
        "testFileName": test_file_name,
        "headless": run.headless,
        "progress": compute_progress(ordered),
        "stepResults": [format_step_result(result, steps.get(result.test_step_id)) for result in ordered],
        "errors": [format_error(error) for error in sorted(errors, key=lambda error: error.timestamp)],
        "networkRequests": [
            format_network_request(request) for request in sorted(network, key=lambda request: request.timestamp)
        ],
    }

"""Test-run orchestration: start, execute, cancel, query and share runs.

Runs execute on a private asyncio loop hosted by a daemon thread.  Request
handlers only create the PENDING records and hand the run over to the loop,
they never wait for it.  A semaphore caps how many browser sessions may be
open at once; runs beyond the cap stay PENDING until admitted.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import traceback
from typing import Any, Dict, List, Optional

from engine.browser_session import BrowserSession, PlaywrightSessionProvider, SessionProvider
from engine.config import RunConfig
from engine.step_executor import StepExecutor, classify_error
from engine.telemetry import TelemetryRecorder

from .catalog import TestFileCatalog, load_catalog
from .errors import ForbiddenError, NotFoundError
from .formatting import format_run
from .models import (
    StepResultStatus,
    TestError,
    TestErrorType,
    TestFile,
    TestRun,
    TestRunStatus,
    new_share_token,
)
from .registry import CancellationRegistry
from .store import JsonFileRunStore, RunStore

log = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
SHARE_TOKEN_ATTEMPTS = 5
INTERRUPTED_MESSAGE = "Test execution was interrupted before completion"


def _screenshot_url(encoded: Optional[str]) -> Optional[str]:
    return f"data:image/png;base64,{encoded}" if encoded else None


class TestRunsService:
    __test__ = False

    def __init__(
        self,
        store: RunStore,
        catalog: TestFileCatalog,
        sessions: Optional[SessionProvider] = None,
        config: Optional[RunConfig] = None,
        *,
        executor: Optional[StepExecutor] = None,
        recover: bool = True,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.config = config or RunConfig()
        self.sessions = sessions or PlaywrightSessionProvider(self.config)
        self.executor = executor or StepExecutor(self.config)
        self.registry = CancellationRegistry()
        self._futures: Dict[str, concurrent.futures.Future] = {}
        self._lock = threading.Lock()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_runs)
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="test-runs", daemon=True)
        self._thread.start()
        if recover:
            self.recover_orphaned_runs()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------
    def start_run(self, test_file_id: str, user_id: str, headless: Optional[bool] = None) -> Dict[str, Any]:
        """Queue a run of the test file; *headless* defaults to the configured mode."""

        test_file = self._require_owned_test_file(test_file_id, user_id)
        if headless is None:
            headless = self.config.headless
        return self._launch(test_file, headless=headless)

    def get_run(self, run_id: str, user_id: str) -> Dict[str, Any]:
        run = self._require_owned_run(run_id, user_id)
        return self._format(run)

    def get_run_by_share_token(self, token: str) -> Dict[str, Any]:
        run = self.store.get_run_by_share_token(token)
        if run is None:
            raise NotFoundError("Test run not found")
        return self._format(run)

    def cancel_run(self, run_id: str, user_id: str) -> Dict[str, str]:
        run = self._require_owned_run(run_id, user_id)
        self.registry.request_cancel(run_id)
        if not run.status.is_terminal and self.store.cancel_if_active(run_id):
            log.info("[%s] Run cancelled", run_id)
        return {"message": "Test run cancelled"}

    def list_runs_for_test_file(
        self, test_file_id: str, user_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Dict[str, Any]]:
        test_file = self._require_owned_test_file(test_file_id, user_id, require_steps=False)
        runs = self.store.list_runs(test_file_id, limit=limit)
        return [self._format(run, test_file_name=test_file.name) for run in runs]

    def verify_fix(self, token: str) -> Dict[str, Any]:
        """Re-run the test behind a shared run against its current steps."""

        original = self.store.get_run_by_share_token(token)
        if original is None:
            raise NotFoundError("Test run not found")
        test_file = self.catalog.get_test_file_with_steps_and_project(original.test_file_id)
        if test_file is None:
            raise NotFoundError("Test file not found")
        if not test_file.steps:
            raise ForbiddenError("Cannot run test with no steps")
        log.info("[%s] Verify-fix requested from shared run", original.id)
        return self._launch(test_file, headless=True)

    def delete_run(self, run_id: str, user_id: str) -> Dict[str, str]:
        self._require_owned_run(run_id, user_id)
        if run_id in self.registry:
            raise ForbiddenError("Cannot delete a test run that is still executing")
        self.store.delete_run(run_id)
        log.info("[%s] Run deleted", run_id)
        return {"message": "Test run deleted"}

    def delete_runs_for_test_file(self, test_file_id: str, user_id: str) -> Dict[str, Any]:
        """Drop the run history of a test file, e.g. before the file itself is deleted."""

        self._require_owned_test_file(test_file_id, user_id, require_steps=False)
        if any(run.test_file_id == test_file_id for run in self._active_runs()):
            raise ForbiddenError("Cannot delete test runs while one is still executing")
        deleted = self.store.delete_runs_for_test_file(test_file_id)
        log.info("Deleted %d runs of test file %s", deleted, test_file_id)
        return {"message": "Test runs deleted", "deleted": deleted}

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the background execution of *run_id* ends.

        Returns False when *timeout* elapses first.  Runs that are not
        executing in this process count as finished.
        """

        with self._lock:
            future = self._futures.get(run_id)
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return False
        except concurrent.futures.CancelledError:
            pass
        return True

    def recover_orphaned_runs(self) -> int:
        """Fail PENDING/RUNNING runs that have no live task in this process."""

        recovered = 0
        for run in self.store.runs_with_status(TestRunStatus.PENDING, TestRunStatus.RUNNING):
            if run.id in self.registry:
                continue
            for result in self.store.list_step_results(run.id):
                if result.status is StepResultStatus.RUNNING:
                    self.store.update_step_result(
                        result.id, status=StepResultStatus.FAILED, error=INTERRUPTED_MESSAGE
                    )
            self.store.skip_pending_step_results(run.id)
            self.store.add_errors(
                run.id,
                [TestError(test_run_id=run.id, type=TestErrorType.OTHER, message=INTERRUPTED_MESSAGE)],
            )
            self.store.finalize_run(run.id, TestRunStatus.FAILED)
            log.warning("[%s] Orphaned %s run marked FAILED", run.id, run.status.value)
            recovered += 1
        return recovered

    def shutdown(self, timeout: float = 10.0) -> None:
        for run_id in self.registry.active_ids():
            self.registry.request_cancel(run_id)
        with self._lock:
            futures = list(self._futures.values())
        if futures:
            concurrent.futures.wait(futures, timeout=timeout)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)

    # ------------------------------------------------------------------
    # launch and execution
    # ------------------------------------------------------------------
    def _launch(self, test_file: TestFile, *, headless: bool) -> Dict[str, Any]:
        steps = test_file.ordered_steps()
        run = self.store.create_run(
            TestRun(test_file_id=test_file.id, share_token=self._unique_share_token(), headless=headless)
        )
        self.store.create_step_results(run.id, steps)
        self.registry.register(run.id)
        future = asyncio.run_coroutine_threadsafe(self._execute(run.id, test_file, headless), self._loop)
        with self._lock:
            self._futures[run.id] = future
        future.add_done_callback(lambda _f, run_id=run.id: self._forget(run_id))
        log.info("[%s] Queued run of test file %s with %d steps", run.id, test_file.id, len(steps))
        return self._format(run, test_file_name=test_file.name)

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._futures.pop(run_id, None)

    def _unique_share_token(self) -> str:
        for _ in range(SHARE_TOKEN_ATTEMPTS):
            token = new_share_token()
            if not self.store.share_token_exists(token):
                return token
        raise RuntimeError("Could not generate a unique share token")

    async def _execute(self, run_id: str, test_file: TestFile, headless: bool) -> None:
        try:
            async with self._semaphore:
                await self._run(run_id, test_file, headless)
        finally:
            self.registry.discard(run_id)

    async def _run(self, run_id: str, test_file: TestFile, headless: bool) -> None:
        # Store writes may hit the disk, so they run in worker threads to keep
        # other runs' browser events flowing on this loop.
        store = self.store
        if not await asyncio.to_thread(store.mark_running, run_id):
            # Cancelled (or otherwise finalised) while waiting for a slot.
            await asyncio.to_thread(store.skip_pending_step_results, run_id)
            log.info("[%s] Run left PENDING before it started; nothing executed", run_id)
            return

        log.info("[%s] Run started (%s)", run_id, "headless" if headless else "headed")
        session: Optional[BrowserSession] = None
        recorder: Optional[TelemetryRecorder] = None
        try:
            session = await self.sessions.open(headless=headless)
            page = session.page
            recorder = TelemetryRecorder(page, run_id)
            recorder.start()

            if test_file.base_url:
                await page.goto(
                    test_file.base_url,
                    wait_until="domcontentloaded",
                    timeout=self.config.navigation_timeout_ms,
                )

            for step in test_file.ordered_steps():
                if self.registry.is_cancelled(run_id):
                    skipped = await asyncio.to_thread(store.skip_pending_step_results, run_id)
                    log.info("[%s] Cancellation observed; %d steps skipped", run_id, skipped)
                    break
                result = store.find_step_result(run_id, step.id)
                if result is None:
                    continue
                await asyncio.to_thread(store.update_step_result, result.id, status=StepResultStatus.RUNNING)
                outcome = await self.executor.execute(page, step)
                await asyncio.to_thread(
                    store.update_step_result,
                    result.id,
                    status=outcome.status,
                    duration=outcome.duration_ms,
                    error=outcome.error,
                    locator_used=outcome.locator_used,
                    screenshot_url=_screenshot_url(outcome.screenshot),
                )
                if not outcome.passed:
                    recorder.errors.append(
                        TestError(
                            test_run_id=run_id,
                            type=classify_error(outcome.error),
                            message=outcome.error or "Unknown error",
                            url=page.url,
                        )
                    )

            recorder.stop()
            await asyncio.to_thread(self._persist_telemetry, run_id, recorder)
            video_url = await self._release(session)
            status = self._final_status(run_id)
            if await asyncio.to_thread(store.finalize_run, run_id, status, video_url=video_url):
                log.info("[%s] Run finished: %s", run_id, status.value)
            else:
                log.info("[%s] Run already finalised; kept existing status", run_id)
        except Exception as exc:
            log.exception("[%s] Test execution failed", run_id)
            if recorder is not None:
                recorder.stop()
            video_url = await self._release(session) if session is not None else None
            await asyncio.to_thread(self._finalize_crash, run_id, exc, recorder, video_url)
        finally:
            if recorder is not None:
                recorder.stop()
            if session is not None:
                await self._release(session)

    def _final_status(self, run_id: str) -> TestRunStatus:
        if self.registry.is_cancelled(run_id):
            return TestRunStatus.CANCELLED
        results = self.store.list_step_results(run_id)
        if results and all(result.status is StepResultStatus.PASSED for result in results):
            return TestRunStatus.PASSED
        return TestRunStatus.FAILED

    def _persist_telemetry(self, run_id: str, recorder: Optional[TelemetryRecorder]) -> None:
        if recorder is None:
            return
        errors, recorder.errors = recorder.errors, []
        requests, recorder.network_requests = recorder.network_requests, []
        self.store.add_errors(run_id, errors)
        self.store.add_network_requests(run_id, requests)

    def _finalize_crash(
        self,
        run_id: str,
        exc: Exception,
        recorder: Optional[TelemetryRecorder],
        video_url: Optional[str],
    ) -> None:
        try:
            self._persist_telemetry(run_id, recorder)
            self.store.add_errors(
                run_id,
                [
                    TestError(
                        test_run_id=run_id,
                        type=TestErrorType.OTHER,
                        message=f"Test execution failed: {exc}",
                        stack="".join(traceback.format_exception(exc)),
                    )
                ],
            )
            self.store.skip_pending_step_results(run_id)
            status = TestRunStatus.CANCELLED if self.registry.is_cancelled(run_id) else TestRunStatus.FAILED
            self.store.finalize_run(run_id, status, video_url=video_url)
        except KeyError:
            log.warning("[%s] Run disappeared before the failure could be recorded", run_id)

    async def _release(self, session: BrowserSession) -> Optional[str]:
        try:
            await session.close()
        except Exception as exc:
            log.warning("Failed to release browser session: %s", exc)
        try:
            return await session.video_url()
        except Exception as exc:
            log.debug("Video lookup failed: %s", exc)
            return None

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def _require_owned_test_file(self, test_file_id: str, user_id: str, *, require_steps: bool = True) -> TestFile:
        test_file = self.catalog.get_test_file_with_steps_and_project(test_file_id)
        if test_file is None:
            raise NotFoundError("Test file not found")
        if not self.catalog.verify_ownership(test_file_id, user_id):
            raise ForbiddenError("Access denied")
        if require_steps and not test_file.steps:
            raise ForbiddenError("Cannot run test with no steps")
        return test_file

    def _active_runs(self) -> List[TestRun]:
        runs = (self.store.get_run(run_id) for run_id in self.registry.active_ids())
        return [run for run in runs if run is not None]

    def _require_owned_run(self, run_id: str, user_id: str) -> TestRun:
        run = self.store.get_run(run_id)
        if run is None:
            raise NotFoundError("Test run not found")
        if not self.catalog.verify_ownership(run.test_file_id, user_id):
            raise ForbiddenError("Access denied")
        return run

    def _format(self, run: TestRun, *, test_file_name: Optional[str] = None) -> Dict[str, Any]:
        if test_file_name is None:
            test_file = self.catalog.get_test_file_with_steps_and_project(run.test_file_id)
            test_file_name = test_file.name if test_file else None
        return format_run(
            run,
            self.store.list_step_results(run.id),
            self.store.list_steps(run.id),
            self.store.list_errors(run.id),
            self.store.list_network_requests(run.id),
            test_file_name=test_file_name,
        )


def build_service(config: Optional[RunConfig] = None, catalog: Optional[TestFileCatalog] = None) -> TestRunsService:
    """Wire a service from configuration: JSON-backed store when a path is set."""

    config = config or RunConfig()
    store: RunStore = JsonFileRunStore(config.store_path) if config.store_path else RunStore()
    if catalog is None:
        catalog = load_catalog(config.catalog_path)
    return TestRunsService(store, catalog, PlaywrightSessionProvider(config), config)

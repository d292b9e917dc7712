"""Generation orchestration: one run from feedback to stored wallpaper.

A run walks a linear state machine::

    IDLE → SUMMARIZING → PROMPTING → IMAGE_GENERATING → FINALIZING → IDLE

Only one run can be in flight. The guard is a non-blocking single-slot lock:
a trigger that arrives while a run is active is rejected immediately with
:class:`GenerationInProgressError` and leaves no trace.

Each stage body runs on a worker thread and is awaited for at most the
stage's timeout. When the timeout elapses the orchestrator stops waiting and
fails the run; whatever the abandoned worker produces later is discarded.
The catalog insert is performed on the orchestrator's own thread after the
finalizing stage returned in time, so an abandoned worker can never publish
an artifact.

Failures never escape :meth:`GenerationOrchestrator.run_generation_cycle`:
they are logged, recorded in the catalog's run log, and reported on the
returned :class:`GenerationRun`. There is no retry within a run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any

from wallpapy.core.catalog import CatalogStore
from wallpapy.core.errors import (
    GenerationInProgressError,
    StageTimeoutError,
    StorageError,
    WallpapyError,
)
from wallpapy.core.finalizer import ArtifactFinalizer
from wallpapy.core.image_generator import ImageClient
from wallpapy.core.models import (
    FeedbackSummary,
    GenerationRun,
    PromptData,
    RunStage,
    RunStatus,
    RunTrigger,
    StyleProfile,
    utcnow,
)
from wallpapy.core.prompt_generator import PromptClient
from wallpapy.core.summarizer import summarize

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Drive generation runs and enforce one-run-at-a-time.

    Args:
        catalog: Catalog read for feedback and written with the result
        prompt_client: Produces the image prompt
        image_client: Produces the image bytes
        finalizer: Encodes, stores and catalogues the image
        style_provider: Returns the style profile for the next run
        prompt_timeout: Seconds allowed for the prompting stage
        image_timeout: Seconds allowed for the image generating stage
        finalize_timeout: Seconds allowed for summarizing and finalizing
        feedback_window: Liked/disliked/comment entries in the summary (K)
        recent_prompt_window: Recent prompts listed for exclusion (R)
    """

    def __init__(
        self,
        catalog: CatalogStore,
        prompt_client: PromptClient,
        image_client: ImageClient,
        finalizer: ArtifactFinalizer,
        style_provider: Callable[[], StyleProfile],
        prompt_timeout: float = 120.0,
        image_timeout: float = 360.0,
        finalize_timeout: float = 60.0,
        feedback_window: int = 5,
        recent_prompt_window: int = 10,
    ):
        self.catalog = catalog
        self.prompt_client = prompt_client
        self.image_client = image_client
        self.finalizer = finalizer
        self.style_provider = style_provider
        self.prompt_timeout = prompt_timeout
        self.image_timeout = image_timeout
        self.finalize_timeout = finalize_timeout
        self.feedback_window = feedback_window
        self.recent_prompt_window = recent_prompt_window

        self._run_lock = threading.Lock()
        self._current_run: GenerationRun | None = None

    @property
    def stage(self) -> RunStage:
        """Stage of the in-flight run, or IDLE."""
        run = self._current_run
        return run.stage if run is not None else RunStage.IDLE

    @property
    def is_busy(self) -> bool:
        return self._run_lock.locked()

    @property
    def current_run(self) -> GenerationRun | None:
        return self._current_run

    def run_generation_cycle(
        self,
        trigger: RunTrigger | str = RunTrigger.MANUAL,
        message: str | None = None,
        prompt_override: PromptData | None = None,
    ) -> GenerationRun:
        """Execute one full generation run.

        Args:
            trigger: What started the run
            message: Optional one-off request forwarded to the prompt model
            prompt_override: Reuse this prompt and skip summarizing and
                prompting (used to recreate an existing wallpaper)

        Returns:
            The finished run, with status ``succeeded`` or ``failed``

        Raises:
            GenerationInProgressError: If another run is in flight
            ValueError: If ``trigger`` is not a known trigger
        """
        trigger = RunTrigger(trigger)
        if not self._run_lock.acquire(blocking=False):
            logger.warning(f"Rejected {trigger.value} trigger: a run is in progress")
            raise GenerationInProgressError("A generation run is already in progress")

        run = GenerationRun(trigger=trigger)
        self._current_run = run
        logger.info(f"Starting {run.trigger.value} generation run {run.id}")
        try:
            self._execute(run, message, prompt_override)
        finally:
            self._finish(run)
            self._current_run = None
            self._run_lock.release()
        return run

    def _execute(
        self, run: GenerationRun, message: str | None, prompt_override: PromptData | None
    ) -> None:
        try:
            style = self.style_provider()

            if prompt_override is None:
                summary = self._run_stage(
                    run, RunStage.SUMMARIZING, self.finalize_timeout, self._summarize, style
                )
                prompt_data = self._run_stage(
                    run,
                    RunStage.PROMPTING,
                    self.prompt_timeout,
                    self.prompt_client.generate_prompt,
                    style,
                    summary,
                    message,
                )
            else:
                logger.info(f"Reusing prompt: {prompt_override.prompt}")
                prompt_data = prompt_override

            raw_bytes = self._run_stage(
                run,
                RunStage.IMAGE_GENERATING,
                self.image_timeout,
                self.image_client.generate_image,
                prompt_data.prompt,
            )
            prepared = self._run_stage(
                run,
                RunStage.FINALIZING,
                self.finalize_timeout,
                self.finalizer.prepare,
                raw_bytes,
                prompt_data,
                style,
            )
            artifact = self.finalizer.commit(prepared)
        except WallpapyError as e:
            self._fail(run, e.kind, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in run {run.id} at stage {run.stage.value}")
            self._fail(run, type(e).__name__, str(e))
        else:
            run.artifact_id = artifact.id
            run.status = RunStatus.SUCCEEDED

    def _summarize(self, style: StyleProfile) -> FeedbackSummary:
        return summarize(
            style,
            self.catalog.snapshot(),
            window=self.feedback_window,
            recent_window=self.recent_prompt_window,
        )

    def _run_stage(
        self,
        run: GenerationRun,
        stage: RunStage,
        timeout: float,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Run ``func`` on a worker thread and wait at most ``timeout`` seconds.

        Raises:
            StageTimeoutError: If the stage did not finish in time
        """
        run.stage = stage
        logger.debug(f"Run {run.id} entering stage {stage.value}")

        future: Future = Future()

        def work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = func(*args)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        # Daemon worker: an abandoned stage must not hold up interpreter exit
        threading.Thread(target=work, name=f"wallpapy-{stage.value}", daemon=True).start()
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            raise StageTimeoutError(
                f"Stage {stage.value} did not finish within {timeout:g}s"
            ) from None

    def _fail(self, run: GenerationRun, kind: str, reason: str) -> None:
        run.status = RunStatus.FAILED
        run.error_kind = kind
        run.reason = reason
        logger.error(f"Run {run.id} failed at stage {run.stage.value}: {kind}: {reason}")

    def _finish(self, run: GenerationRun) -> None:
        run.finished_at = utcnow()
        if run.status is RunStatus.RUNNING:
            # Only reachable if the run was interrupted (e.g. KeyboardInterrupt)
            run.status = RunStatus.FAILED
            run.error_kind = run.error_kind or "Interrupted"
        if run.succeeded:
            run.stage = RunStage.IDLE
            elapsed = (run.finished_at - run.started_at).total_seconds()
            logger.info(f"Run {run.id} succeeded: artifact {run.artifact_id} in {elapsed:.1f}s")

        try:
            self.catalog.record_run(run)
        except StorageError as e:
            logger.error(f"Could not record run {run.id} in the run log: {e}")

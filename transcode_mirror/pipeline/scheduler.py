"""
The job scheduler and worker pool.

Change sets are expanded into jobs, grouped per album into `AlbumPlan`s, and
executed by a fixed number of worker threads pulling from one shared queue.

Rules the scheduler guarantees:
    - At most `workers` jobs run at the same time, which bounds both the number of
      ffmpeg processes and the number of concurrent file copies.
    - A failed job is retried up to `RetryPolicy.max_retries` more times, waiting
      `retry_delay` seconds before each retry. Only that worker waits.
    - Every job ends with exactly one `JobResult`: succeeded, failed or cancelled.
    - An album's plan is committed (its state files written) only by the worker
      that finishes the album's last job, and only if every job of the album
      succeeded and the run was not cancelled.
    - On cancellation no new jobs are started, running jobs stop at their next
      checkpoint, partial output files are deleted, and jobs still queued are
      reported as cancelled.

Everything that changes during a run lives in a `RunContext`, which is handed to
every worker. There is no module-level state.
"""

import concurrent.futures
import itertools
import queue
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from loguru import logger

from ..config.common import COPY_CHUNK_SIZE, DEFAULT_WORKERS
from ..domain.events import AlbumCommitted, JobCancelled, JobFailed, JobProgress, JobStarted, JobSucceeded, LogLine
from ..domain.exceptions import (
    CancelledException,
    ConfigurationException,
    LibraryIOException,
    StateStoreException,
    ToolExecutionException,
    TranscodeMirrorException,
)
from ..domain.jobs import Job, JobKind, JobOutcome, JobResult, RetryPolicy
from ..domain.records import AlbumKey, ChangeSet, sorted_paths
from ..services.change_detection import derived_output_path
from ..services.progress import ProgressChannel
from ..services.transcoder import Transcoder
from ..utils.fs_utils import from_relative_posix, remove_empty_parents


@dataclass
class AlbumPlan:
    """
    The jobs of one album and what to do once all of them succeeded.

    Attributes:
        key: The album.
        change_set: The change set the jobs were derived from.
        jobs: The jobs to run.
        commit: Persists the album's new state. Called at most once, after every
                job succeeded. None for plans with nothing to persist.
    """

    key: AlbumKey
    change_set: ChangeSet
    jobs: List[Job]
    commit: Optional[Callable[[], None]] = None


class AlbumBarrier:
    """
    Counts the unfinished jobs of one album.

    The counter is only changed under the barrier's own lock, so exactly one
    worker sees it reach zero and becomes the album's committer.
    """

    def __init__(self, plan: AlbumPlan):
        self.plan = plan
        self._lock = threading.Lock()
        self._remaining = len(plan.jobs)
        self._all_succeeded = True

    def job_finished(self, succeeded: bool) -> bool:
        """Records a finished job. Returns True for the call that finished the album."""
        with self._lock:
            self._remaining -= 1
            if not succeeded:
                self._all_succeeded = False
            return self._remaining == 0

    @property
    def all_succeeded(self) -> bool:
        with self._lock:
            return self._all_succeeded


class RunContext:
    """
    All state of one run that workers share.

    Attributes:
        transcoder: Runs TRANSCODE jobs.
        channel: Receives progress events.
        retry_policy: How failed jobs are retried.
        workers: Number of worker threads.
        cancel_event: Set once the run is cancelled; never cleared.
        job_queue: Jobs waiting for a worker.
        barriers: Per-album commit barriers.
        results: Terminal results of all finished jobs.
    """

    def __init__(
        self,
        transcoder: Transcoder,
        channel: ProgressChannel,
        retry_policy: RetryPolicy = RetryPolicy(),
        workers: int = DEFAULT_WORKERS,
    ):
        if workers < 1:
            raise ConfigurationException(f"At least one worker is required, got {workers}.")
        self.transcoder = transcoder
        self.channel = channel
        self.retry_policy = retry_policy
        self.workers = workers

        self.cancel_event = threading.Event()
        self.job_queue: "queue.Queue[Job]" = queue.Queue()
        self.barriers: Dict[AlbumKey, AlbumBarrier] = {}

        self._job_ids: Iterator[int] = itertools.count(1)
        self._job_id_lock = threading.Lock()

        self._results_lock = threading.Lock()
        self.results: List[JobResult] = []
        self.committed_albums: List[AlbumKey] = []
        self.uncommitted_albums: List[AlbumKey] = []
        self.commit_errors: List[str] = []
        self.fatal_error: Optional[BaseException] = None

    def next_job_id(self) -> int:
        with self._job_id_lock:
            return next(self._job_ids)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            logger.warning("Cancelling run: no new jobs will be started.")
        self.cancel_event.set()

    def emit(self, event) -> None:
        self.channel.emit(event, self.cancel_event)

    def record_result(self, result: JobResult) -> None:
        with self._results_lock:
            self.results.append(result)

    def record_album(self, key: AlbumKey, committed: bool, error: Optional[str] = None) -> None:
        with self._results_lock:
            (self.committed_albums if committed else self.uncommitted_albums).append(key)
            if error is not None:
                self.commit_errors.append(error)

    def record_fatal_error(self, error: BaseException) -> None:
        with self._results_lock:
            if self.fatal_error is None:
                self.fatal_error = error


@dataclass
class RunReport:
    """The outcome of a scheduler run."""

    results: List[JobResult] = field(default_factory=list)
    committed_albums: List[AlbumKey] = field(default_factory=list)
    uncommitted_albums: List[AlbumKey] = field(default_factory=list)
    commit_errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    def _with_outcome(self, outcome: JobOutcome) -> List[JobResult]:
        return [result for result in self.results if result.outcome is outcome]

    @property
    def succeeded_results(self) -> List[JobResult]:
        return self._with_outcome(JobOutcome.SUCCEEDED)

    @property
    def failed_results(self) -> List[JobResult]:
        return self._with_outcome(JobOutcome.FAILED)

    @property
    def cancelled_results(self) -> List[JobResult]:
        return self._with_outcome(JobOutcome.CANCELLED)

    def failed_paths(self) -> List[str]:
        """Paths of failed jobs (the source file where there is one), sorted."""
        return sorted(str(r.job.source_path or r.job.output_path) for r in self.failed_results)


def expand_change_set(
    change_set: ChangeSet,
    source_album_dir: Optional[Path],
    output_album_dir: Path,
    output_extension: str,
    next_job_id: Optional[Callable[[], int]] = None,
) -> List[Job]:
    """
    Turns a change set into jobs.

    For an album-removed or artist-removed change set, `output_album_dir` is the
    output directory to delete (the album or the artist directory) and a single
    DELETE_OUTPUT_TREE job is produced.

    Args:
        change_set: The album's change set.
        source_album_dir: The source album directory (unused for removals).
        output_album_dir: The transcoded album directory.
        output_extension: Extension of transcoded audio files.
        next_job_id: Supplies job ids; a fresh counter starting at 1 if omitted.

    Returns:
        Jobs in a stable order: transcodes, copies, then deletions.
    """
    if next_job_id is None:
        next_job_id = itertools.count(1).__next__

    if change_set.album_removed or change_set.artist_removed:
        return [
            Job(
                job_id=next_job_id(),
                album=change_set.album,
                kind=JobKind.DELETE_OUTPUT_TREE,
                output_path=output_album_dir,
                cleanup_stop_dir=output_album_dir.parent.parent if change_set.album_removed else output_album_dir.parent,
            )
        ]

    if source_album_dir is None:
        raise ValueError("A source album directory is required to expand a non-removal change set.")

    jobs: List[Job] = []
    for path in sorted_paths(change_set.audio_to_transcode):
        jobs.append(
            Job(
                job_id=next_job_id(),
                album=change_set.album,
                kind=JobKind.TRANSCODE,
                source_path=from_relative_posix(source_album_dir, path),
                output_path=from_relative_posix(
                    output_album_dir, derived_output_path(path, True, output_extension)
                ),
            )
        )
    for path in sorted_paths(change_set.data_to_copy):
        jobs.append(
            Job(
                job_id=next_job_id(),
                album=change_set.album,
                kind=JobKind.COPY,
                source_path=from_relative_posix(source_album_dir, path),
                output_path=from_relative_posix(output_album_dir, path),
            )
        )
    for path in sorted_paths(change_set.files_to_delete_in_output):
        jobs.append(
            Job(
                job_id=next_job_id(),
                album=change_set.album,
                kind=JobKind.DELETE_OUTPUT_FILE,
                output_path=from_relative_posix(output_album_dir, path),
                cleanup_stop_dir=output_album_dir,
            )
        )
    return jobs


class JobScheduler:
    """
    Runs album plans on a pool of worker threads.

    Usage:
        context = RunContext(transcoder, channel, retry_policy, workers=4)
        report = JobScheduler(context).run(plans)
    """

    def __init__(self, context: RunContext):
        self.context = context

    def cancel(self) -> None:
        self.context.cancel()

    # --- Job execution ---

    def _transcode(self, job: Job) -> None:
        context = self.context
        result = context.transcoder.run(
            job.source_path,
            job.output_path,
            cancel_event=context.cancel_event,
            on_progress=lambda fraction: context.emit(JobProgress(job.job_id, fraction)),
        )
        if not result.succeeded:
            self._discard_partial_output(job.output_path)
        if result.cancelled:
            raise CancelledException(f"Transcode of {job.source_path} was cancelled.")
        if result.exit_status != 0:
            raise ToolExecutionException(
                f"Transcoder exited with status {result.exit_status} for {job.source_path}",
                exit_status=result.exit_status,
                stderr_tail=result.stderr_tail,
            )
        if not job.output_path.is_file():
            raise LibraryIOException(f"Transcoder reported success but produced no file: {job.output_path}")

    def _copy(self, job: Job) -> None:
        cancel_event = self.context.cancel_event
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        output_opened = False
        try:
            with job.source_path.open("rb") as src, job.output_path.open("wb") as dst:
                output_opened = True
                while True:
                    if cancel_event.is_set():
                        raise CancelledException(f"Copy of {job.source_path} was cancelled.")
                    chunk = src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
            shutil.copystat(job.source_path, job.output_path)
        except (CancelledException, OSError):
            # An output this attempt never opened belongs to an earlier run.
            if output_opened:
                self._discard_partial_output(job.output_path)
            raise

    @staticmethod
    def _delete_file(job: Job) -> None:
        try:
            job.output_path.unlink()
        except FileNotFoundError:
            logger.debug(f"Output file already gone: {job.output_path}")
        if job.cleanup_stop_dir is not None:
            remove_empty_parents(job.output_path.parent, job.cleanup_stop_dir)

    @staticmethod
    def _delete_tree(job: Job) -> None:
        if job.output_path.exists():
            shutil.rmtree(job.output_path)
        else:
            logger.debug(f"Output directory already gone: {job.output_path}")
        if job.cleanup_stop_dir is not None:
            remove_empty_parents(job.output_path.parent, job.cleanup_stop_dir)

    def _attempt(self, job: Job) -> None:
        if job.kind is JobKind.TRANSCODE:
            self._transcode(job)
        elif job.kind is JobKind.COPY:
            self._copy(job)
        elif job.kind is JobKind.DELETE_OUTPUT_FILE:
            self._delete_file(job)
        elif job.kind is JobKind.DELETE_OUTPUT_TREE:
            self._delete_tree(job)
        else:
            raise ValueError(f"Unknown job kind: {job.kind}")

    @staticmethod
    def _discard_partial_output(output_path: Path) -> None:
        try:
            output_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial output {output_path}: {e}")

    def _run_job(self, job: Job) -> JobResult:
        """Runs one job with retries and returns its terminal result."""
        context = self.context
        policy = context.retry_policy
        context.emit(JobStarted(job.job_id, job.album, job.kind, job.describe()))

        attempt = 0
        while True:
            attempt += 1
            try:
                self._attempt(job)
            except CancelledException:
                context.emit(JobCancelled(job.job_id))
                return JobResult(job, JobOutcome.CANCELLED, attempt)
            except (TranscodeMirrorException, OSError) as e:
                error = str(e)
                detail = error
                if isinstance(e, ToolExecutionException) and e.stderr_tail:
                    detail = f"{error}\n{e.stderr_tail}"

                if context.cancelled:
                    # Failing while the run is being cancelled is part of the cancellation.
                    logger.debug(f"[{job.album}] {job.describe()} stopped during cancellation: {error}")
                    context.emit(JobCancelled(job.job_id))
                    return JobResult(job, JobOutcome.CANCELLED, attempt, detail)

                will_retry = attempt < policy.max_attempts
                context.emit(JobFailed(job.job_id, attempt, will_retry, error))
                if not will_retry:
                    logger.error(f"[{job.album}] {job.describe()} failed after {attempt} attempt(s): {error}")
                    return JobResult(job, JobOutcome.FAILED, attempt, detail)

                logger.debug(f"Retrying {job.describe()} in {policy.retry_delay}s (attempt {attempt} failed)")
                if context.cancel_event.wait(policy.retry_delay):
                    context.emit(JobCancelled(job.job_id))
                    return JobResult(job, JobOutcome.CANCELLED, attempt, detail)
            else:
                context.emit(JobSucceeded(job.job_id))
                return JobResult(job, JobOutcome.SUCCEEDED, attempt)

    # --- Album barriers ---

    def _close_album(self, barrier: AlbumBarrier) -> None:
        context = self.context
        plan = barrier.plan
        if not barrier.all_succeeded or context.cancelled:
            context.record_album(plan.key, committed=False)
            context.emit(LogLine("WARNING", f"{plan.key}: not committed (failed or cancelled jobs)"))
            return

        if plan.commit is not None:
            try:
                plan.commit()
            except (StateStoreException, OSError) as e:
                logger.critical(f"[{plan.key}] Could not save album state, aborting run: {e}")
                context.record_fatal_error(e)
                context.record_album(plan.key, committed=False)
                context.cancel()
                return
            except TranscodeMirrorException as e:
                # No state file was written; the next run plans the album again.
                message = f"[{plan.key}] not committed: {e}"
                logger.error(message)
                context.record_album(plan.key, committed=False, error=message)
                context.emit(LogLine("ERROR", message))
                return

        context.record_album(plan.key, committed=True)
        context.emit(AlbumCommitted(plan.key))

    def _finish_job(self, result: JobResult) -> None:
        self.context.record_result(result)
        barrier = self.context.barriers[result.job.album]
        if barrier.job_finished(result.succeeded):
            self._close_album(barrier)

    def _worker_loop(self) -> None:
        context = self.context
        while not context.cancelled:
            try:
                job = context.job_queue.get_nowait()
            except queue.Empty:
                return
            self._finish_job(self._run_job(job))

    def _cancel_queued_jobs(self) -> None:
        while True:
            try:
                job = self.context.job_queue.get_nowait()
            except queue.Empty:
                return
            self.context.emit(JobCancelled(job.job_id))
            self._finish_job(JobResult(job, JobOutcome.CANCELLED, attempts=0))

    # --- Entry point ---

    def run(self, plans: Sequence[AlbumPlan]) -> RunReport:
        """
        Runs all jobs of the given plans and commits the albums that completed.

        Plans without jobs are committed right away. A KeyboardInterrupt while
        waiting for the workers cancels the run; the report then says so.

        Args:
            plans: The album plans. Album keys must be unique.

        Returns:
            The `RunReport`.

        Raises:
            StateStoreException: An album state could not be saved. The run was
                                 cancelled before this is raised.
        """
        context = self.context
        total_jobs = 0
        for plan in plans:
            if plan.key in context.barriers:
                raise ValueError(f"Duplicate album plan: {plan.key}")
            barrier = AlbumBarrier(plan)
            context.barriers[plan.key] = barrier
            if not plan.jobs:
                self._close_album(barrier)
                continue
            for job in plan.jobs:
                context.job_queue.put(job)
            total_jobs += len(plan.jobs)

        worker_count = min(context.workers, total_jobs)
        if worker_count:
            logger.info(f"Running {total_jobs} jobs with {worker_count} worker(s).")
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=worker_count, thread_name_prefix="worker"
            ) as executor:
                futures = [executor.submit(self._worker_loop) for _ in range(worker_count)]
                try:
                    for future in concurrent.futures.as_completed(futures):
                        future.result()
                except KeyboardInterrupt:
                    logger.warning("Interrupted by user (Ctrl+C).")
                    self.cancel()
                    concurrent.futures.wait(futures)

        self._cancel_queued_jobs()

        if context.fatal_error is not None:
            raise context.fatal_error

        report = RunReport(
            results=list(context.results),
            committed_albums=list(context.committed_albums),
            uncommitted_albums=list(context.uncommitted_albums),
            commit_errors=list(context.commit_errors),
            cancelled=context.cancelled,
        )
        logger.debug(
            f"Scheduler finished: {len(report.succeeded_results)} succeeded, "
            f"{len(report.failed_results)} failed, {len(report.cancelled_results)} cancelled"
        )
        return report

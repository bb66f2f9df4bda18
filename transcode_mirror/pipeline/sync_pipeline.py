"""
Orchestrates one synchronization run over the configured libraries.

For every selected library the pipeline:
    1. discovers its artists and albums,
    2. compares them with the saved library state to find removed albums and artists,
    3. builds the view of every album, stats its tracked files and diffs them
       against the album's last committed source-state and transcode-state,
    4. turns every non-empty change set into an album plan whose commit writes the
       album's new transcode-state and source-state files.

All plans of all libraries then go to a single `JobScheduler` run, so the worker
limit applies to the run as a whole. Afterwards, if the run was not cancelled,
each library's state is replaced, and failures are written to the error log and
the run log in the output library.

All libraries are transcoded into one output tree: `<output>/<artist>/<album>`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from loguru import logger

from ..config.common import EXIT_CANCELLED, EXIT_JOBS_FAILED, EXIT_OK
from ..config.settings import LibraryConfig, Settings
from ..domain.exceptions import (
    ConfigurationException,
    LibraryIOException,
    SerializationException,
    StructureException,
)
from ..domain.jobs import JobKind
from ..domain.records import AlbumKey, AlbumState, LibraryState
from ..services.album_view import build_album_view, discover_library, load_album_override
from ..services.change_detection import (
    detect_removals,
    diff_album,
    load_prior_album_state,
    snapshot_album,
    snapshot_output,
)
from ..services.logging_service import ErrorLog, RunLog
from ..services.progress import ProgressChannel, ProgressConsumer
from ..services.state_store import (
    library_state_path,
    load_library_state,
    save_album_state,
    save_library_state,
    source_state_path,
    transcode_state_path,
)
from ..services.transcoder import Transcoder
from ..utils.format_utils import format_timedelta
from .scheduler import AlbumPlan, JobScheduler, RunContext, RunReport, expand_change_set


@dataclass
class LibraryPass:
    """What the planning phase learned about one library."""

    library: LibraryConfig
    fresh_state: LibraryState
    saved_state: Optional[LibraryState]
    removal_keys: List[AlbumKey] = field(default_factory=list)


@dataclass
class SyncSummary:
    """The result of a synchronization run."""

    report: RunReport
    libraries: List[str]
    album_errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None

    @property
    def exit_code(self) -> int:
        if self.report.cancelled:
            return EXIT_CANCELLED
        if self.report.failed_results or self.report.commit_errors or self.album_errors:
            return EXIT_JOBS_FAILED
        return EXIT_OK

    def to_log_entry(self) -> dict:
        ended_at = self.ended_at or datetime.now()
        return {
            "started": self.started_at.isoformat(timespec="seconds"),
            "ended": ended_at.isoformat(timespec="seconds"),
            "duration": format_timedelta(ended_at - self.started_at),
            "libraries": list(self.libraries),
            "cancelled": self.report.cancelled,
            "jobs": {
                "succeeded": len(self.report.succeeded_results),
                "failed": len(self.report.failed_results),
                "cancelled": len(self.report.cancelled_results),
            },
            "committed_albums": len(self.report.committed_albums),
            "uncommitted_albums": sorted(str(key) for key in self.report.uncommitted_albums),
            "failed_paths": self.report.failed_paths(),
            "album_errors": list(self.album_errors),
            "commit_errors": list(self.report.commit_errors),
        }


class LibrarySyncPipeline:
    """
    Brings the output library up to date with the selected source libraries.

    Usage:
        pipeline = LibrarySyncPipeline(settings, transcoder, LogConsumer())
        summary = pipeline.run()
    """

    def __init__(
        self,
        settings: Settings,
        transcoder: Transcoder,
        consumer: ProgressConsumer,
        library_names: Optional[Sequence[str]] = None,
        workers: Optional[int] = None,
    ):
        self.settings = settings
        self.transcoder = transcoder
        self.consumer = consumer
        if library_names:
            self.libraries = [settings.library(name) for name in library_names]
        else:
            self.libraries = list(settings.libraries)
        self.workers = workers or settings.transcode.workers
        self.output_root = settings.output_library_path
        self.output_extension = transcoder.output_extension
        self.album_errors: List[str] = []
        self.context: Optional[RunContext] = None

    def cancel(self) -> None:
        if self.context is not None:
            self.context.cancel()

    # --- Planning ---

    def _album_error(self, key: AlbumKey, error: Exception) -> None:
        message = f"[{key}] skipped: {error}"
        logger.error(message)
        self.album_errors.append(message)

    def _make_commit(self, key: AlbumKey, source_album_dir: Path, output_album_dir: Path, view, current: AlbumState):
        output_extension = self.output_extension

        def commit() -> None:
            # The source-state is written last: it is what the next run diffs against.
            output_album_dir.mkdir(parents=True, exist_ok=True)
            save_album_state(
                transcode_state_path(output_album_dir),
                snapshot_output(output_album_dir, view, output_extension),
            )
            save_album_state(source_state_path(source_album_dir), current)
            logger.debug(f"[{key}] State committed.")

        return commit

    def plan_album(self, library: LibraryConfig, artist: str, album: str, context: RunContext) -> Optional[AlbumPlan]:
        """
        Builds the plan of one album, or returns None if the album is up to date
        or could not be scanned (the error is recorded).
        """
        key = AlbumKey(library.name, artist, album)
        source_album_dir = library.path / artist / album
        output_album_dir = self.output_root / artist / album

        try:
            album_override = load_album_override(source_album_dir)
            view = build_album_view(
                source_album_dir,
                album_override,
                library.audio_extensions,
                library.data_extensions,
                library_root=library.path,
            )
            current = snapshot_album(source_album_dir, view)
        except (ConfigurationException, LibraryIOException, StructureException) as e:
            self._album_error(key, e)
            return None

        prior_state = load_prior_album_state(source_state_path(source_album_dir))
        transcode_state = load_prior_album_state(transcode_state_path(output_album_dir))
        change_set = diff_album(
            current, prior_state, key, output_album_dir, self.output_extension, transcode_state=transcode_state
        )
        if change_set.is_empty():
            logger.trace(f"[{key}] Up to date.")
            return None

        jobs = expand_change_set(
            change_set, source_album_dir, output_album_dir, self.output_extension, context.next_job_id
        )
        logger.info(f"[{key}] {change_set.summary()}")
        return AlbumPlan(
            key=key,
            change_set=change_set,
            jobs=jobs,
            commit=self._make_commit(key, source_album_dir, output_album_dir, view, current),
        )

    def plan_library(self, library: LibraryConfig, context: RunContext) -> Tuple[Optional[LibraryPass], List[AlbumPlan]]:
        """
        Plans one library. Returns (None, []) if the library could not be scanned at all.
        """
        logger.info(f"Scanning library {library.name} ({library.path})")
        try:
            scan = discover_library(library)
        except LibraryIOException as e:
            message = f"[{library.name}] library skipped: {e}"
            logger.error(message)
            self.album_errors.append(message)
            return None, []
        self.album_errors.extend(f"[{library.name}] {error}" for error in scan.structure_errors)

        try:
            saved_state = load_library_state(library_state_path(library.path))
        except SerializationException as e:
            logger.warning(f"Ignoring library state of {library.name}, removals cannot be detected this run: {e}")
            saved_state = None

        fresh_state = scan.to_library_state()
        if saved_state is not None:
            # Artists skipped for layout violations still exist; keep what was known about them.
            for artist in scan.skipped_artists:
                for album in saved_state.albums_of(artist):
                    fresh_state.add_album(artist, album)

        library_pass = LibraryPass(library=library, fresh_state=fresh_state, saved_state=saved_state)
        plans: List[AlbumPlan] = []

        for change_set in detect_removals(saved_state, fresh_state, library.name):
            if change_set.artist_removed:
                target_dir = self.output_root / change_set.album.artist
            else:
                target_dir = self.output_root / change_set.album.artist / change_set.album.album
            jobs = expand_change_set(change_set, None, target_dir, self.output_extension, context.next_job_id)
            plans.append(AlbumPlan(key=change_set.album, change_set=change_set, jobs=jobs))
            library_pass.removal_keys.append(change_set.album)

        for artist in sorted(scan.artists):
            for album in sorted(scan.artists[artist]):
                plan = self.plan_album(library, artist, album, context)
                if plan is not None:
                    plans.append(plan)

        return library_pass, plans

    # --- Finishing ---

    @staticmethod
    def _final_library_state(library_pass: LibraryPass, report: RunReport) -> LibraryState:
        """
        The library state to save: everything discovered now, plus removed albums
        and artists whose output could not be deleted (so the deletion is retried).
        """
        state = LibraryState(
            tracked_artists={artist: set(albums) for artist, albums in library_pass.fresh_state.tracked_artists.items()}
        )
        failed_removals: Set[AlbumKey] = {
            result.job.album
            for result in report.results
            if result.job.kind is JobKind.DELETE_OUTPUT_TREE and not result.succeeded
        }
        for key in library_pass.removal_keys:
            if key not in failed_removals:
                continue
            if key.album is None:
                for album in library_pass.saved_state.albums_of(key.artist):
                    state.add_album(key.artist, album)
            else:
                state.add_album(key.artist, key.album)
        return state

    def _write_logs(self, summary: SyncSummary) -> None:
        error_log = ErrorLog.for_output_library(self.output_root)
        for result in summary.report.failed_results:
            error_log.write(
                f"[{result.job.album}] {result.job.describe()}",
                f"Attempts: {result.attempts}",
                result.error or "",
            )
        for message in summary.report.commit_errors + summary.album_errors:
            error_log.write(message)
        RunLog.for_output_library(self.output_root).write(summary.to_log_entry())

    # --- Entry point ---

    def run(self) -> SyncSummary:
        """
        Runs one synchronization pass.

        Returns:
            The `SyncSummary`.

        Raises:
            StateStoreException: An album or library state could not be saved.
        """
        started_at = datetime.now()
        self.album_errors = []
        self.output_root.mkdir(parents=True, exist_ok=True)

        with ProgressChannel(self.consumer, self.settings.transcode.progress_buffer_size) as channel:
            context = RunContext(
                transcoder=self.transcoder,
                channel=channel,
                retry_policy=self.settings.transcode.retry_policy(),
                workers=self.workers,
            )
            self.context = context

            library_passes: List[LibraryPass] = []
            plans: List[AlbumPlan] = []
            for library in self.libraries:
                library_pass, library_plans = self.plan_library(library, context)
                if library_pass is not None:
                    library_passes.append(library_pass)
                    plans.extend(library_plans)

            total_jobs = sum(len(plan.jobs) for plan in plans)
            logger.info(f"{len(plans)} album(s) need work, {total_jobs} job(s) in total.")
            self.consumer.begin(total_jobs)
            report = JobScheduler(context).run(plans)

        if report.cancelled:
            logger.warning("Run was cancelled; library states are left unchanged.")
        else:
            for library_pass in library_passes:
                save_library_state(
                    library_state_path(library_pass.library.path),
                    self._final_library_state(library_pass, report),
                )

        summary = SyncSummary(
            report=report,
            libraries=[library.name for library in self.libraries],
            album_errors=list(self.album_errors),
            started_at=started_at,
            ended_at=datetime.now(),
        )
        self._write_logs(summary)
        return summary


def log_summary(summary: SyncSummary) -> None:
    """Logs the end-of-run summary, listing every failed path."""
    report = summary.report
    duration = format_timedelta((summary.ended_at or datetime.now()) - summary.started_at)
    counts = (
        f"{len(report.succeeded_results)} succeeded, {len(report.failed_results)} failed, "
        f"{len(report.cancelled_results)} cancelled; {len(report.committed_albums)} album(s) committed"
    )

    if report.cancelled:
        logger.warning(f"Run cancelled after {duration}: {counts}")
    elif report.failed_results or report.commit_errors or summary.album_errors:
        logger.error(f"Run finished with errors in {duration}: {counts}")
    else:
        logger.success(f"Run finished in {duration}: {counts}")

    for path in report.failed_paths():
        logger.error(f"  failed: {path}")
    for key in report.uncommitted_albums:
        logger.warning(f"  not committed: {key}")
    for message in report.commit_errors + summary.album_errors:
        logger.error(f"  {message}")

"""
Batch runner.

Drives decode -> detect -> plan -> render -> write for every input file and
records exactly one ProcessResult per file. Per-file failures (decode,
detection, encode, anything unexpected) are logged and recorded; the batch
always moves on to the next file. Two conditions stop a run:

- ConfigurationError: raised before or while building the first detector.
- PlanningError: the crop planner broke its own guarantees. This is a bug,
  so dispatching stops, in-flight files finish, and the error is re-raised.

With `workers > 1` files are processed on a thread pool. Results are only
ever recorded from the dispatching thread, through a SummaryAccumulator, so
the progress callback is never called concurrently.

Cancellation (`cancel()` or Ctrl-C) stops dispatching new files and lets
in-flight files finish; files never started are recorded as skipped with
reason `cancelled`.
"""
from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import threading

from domain.errors import ConfigurationError, DetectionError, HeadshotError, PlanningError
from domain.models import (
    CropConfig,
    ErrorKind,
    FaceBox,
    FileState,
    ProcessResult,
    ProcessStatus,
    ProgressEvent,
    ProgressKind,
    RunSummary,
    SkipReason,
)
from services.crop_planner import CropDecision, plan_crop
from services.face_detection import DetectorFactory, FaceDetector
from services.image_transformer import (
    decode_image,
    extension_for,
    render,
    render_debug_overlay,
    resolve_output_format,
)
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

# Allowed forward moves of a file through the pipeline
_TRANSITIONS = {
    FileState.PENDING: {FileState.DETECTING, FileState.SKIPPED, FileState.FAILED},
    FileState.DETECTING: {FileState.PLANNING, FileState.FAILED},
    FileState.PLANNING: {FileState.RENDERING, FileState.SKIPPED, FileState.FAILED},
    FileState.RENDERING: {FileState.SUCCEEDED, FileState.FAILED},
}


class FileLifecycle:
    """Tracks one file's state; only the forward moves in _TRANSITIONS are allowed."""

    def __init__(self, source: str):
        self.source = source
        self.state = FileState.PENDING

    def advance(self, new_state: FileState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal state change {self.state.value} -> {new_state.value} for {self.source}")
        logger.debug("%s: %s -> %s", self.source, self.state.value, new_state.value)
        self.state = new_state


class SummaryAccumulator:
    """Write-once result slots, one per input, filled from any thread."""

    def __init__(self, paths: Sequence[Path]):
        self._paths = list(paths)
        self._results: List[Optional[ProcessResult]] = [None] * len(self._paths)
        self._lock = threading.Lock()

    def record(self, index: int, result: ProcessResult) -> None:
        with self._lock:
            if self._results[index] is not None:
                raise RuntimeError(f"Result for {self._paths[index]} recorded twice")
            self._results[index] = result

    def finalize(self, cancelled: bool) -> RunSummary:
        with self._lock:
            results = [
                r if r is not None else ProcessResult.skipped(str(p), SkipReason.CANCELLED)
                for p, r in zip(self._paths, self._results)
            ]
        return RunSummary(results=results, cancelled=cancelled)


class BatchRunner:
    """
    Processes a list of input images into cropped headshots.

    Args:
        config: Validated run configuration
        detector_factory: Zero-argument callable building a face detector;
            called once per worker thread
        storage: Where outputs are written
        progress_callback: Optional callable receiving ProgressEvents
        debug_overlays: Also write an overlay image per processed file
    """

    def __init__(
        self,
        config: CropConfig,
        detector_factory: DetectorFactory,
        storage: FileStorage,
        progress_callback: Optional[ProgressCallback] = None,
        debug_overlays: bool = False,
    ):
        self.config = config
        self.storage = storage
        self.progress_callback = progress_callback
        self.debug_overlays = debug_overlays
        self._detector_factory = detector_factory
        self._local = threading.local()
        self._detectors: List[FaceDetector] = []
        self._detectors_lock = threading.Lock()
        self._cancel_event = threading.Event()

    # ---- lifecycle -------------------------------------------------------

    def cancel(self) -> None:
        """Stop dispatching new files; in-flight files still finish."""
        if not self._cancel_event.is_set():
            logger.info("Cancelling run; no new files will be started")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _get_detector(self) -> FaceDetector:
        detector = getattr(self._local, "detector", None)
        if detector is None:
            detector = self._detector_factory()
            self._local.detector = detector
            with self._detectors_lock:
                self._detectors.append(detector)
        return detector

    def _close_detectors(self) -> None:
        with self._detectors_lock:
            detectors, self._detectors = self._detectors, []
        for detector in detectors:
            close = getattr(detector, "close", None)
            if callable(close):
                close()
        self._local = threading.local()

    # ---- per file --------------------------------------------------------

    def output_path_for(self, path: Union[str, Path]) -> Path:
        output_format = resolve_output_format(self.config.output_format, path)
        return self.storage.output_path_for(path, extension_for(output_format))

    def _detect(self, image) -> List[FaceBox]:
        detector = self._get_detector()
        try:
            return list(detector.detect(image))
        except HeadshotError:
            raise
        except Exception as e:
            raise DetectionError(f"Detector raised {type(e).__name__}: {e}") from e

    def _write_debug_overlay(self, path: Path, image, faces: List[FaceBox], decision: CropDecision) -> None:
        try:
            data = render_debug_overlay(image, faces, decision.face, decision.crop)
            debug_path = self.storage.write_atomic(self.storage.debug_path_for(path), data)
            logger.debug("Wrote debug overlay %s", debug_path)
        except Exception:
            logger.exception("Failed to write debug overlay for %s", path)

    def process_file(self, path: Union[str, Path], output_path: Optional[Path] = None) -> ProcessResult:
        """
        Run one file through the pipeline.

        Returns:
            The file's ProcessResult

        Raises:
            PlanningError: The planner produced an invalid crop (a bug)
            ConfigurationError: The detector could not be built
        """
        path = Path(path)
        source = str(path)
        lifecycle = FileLifecycle(source)
        try:
            lifecycle.advance(FileState.DETECTING)
            image = decode_image(path)
            faces = self._detect(image)

            lifecycle.advance(FileState.PLANNING)
            decision = plan_crop(faces, image.width, image.height, self.config)
            if self.debug_overlays:
                self._write_debug_overlay(path, image, faces, decision)
            if decision.crop is None:
                lifecycle.advance(FileState.SKIPPED)
                return ProcessResult.skipped(source, decision.skip_reason, face_count=len(faces))

            lifecycle.advance(FileState.RENDERING)
            output_format = resolve_output_format(self.config.output_format, path)
            encoded = render(
                image,
                decision.crop,
                self.config.output_size,
                output_format,
                quality=self.config.jpeg_quality,
            )
            target = output_path or self.output_path_for(path)
            self.storage.write_atomic(target, encoded.data)
            lifecycle.advance(FileState.SUCCEEDED)
            return ProcessResult.success(
                source,
                str(target),
                decision.crop,
                face=decision.face,
                face_count=len(faces),
            )
        except PlanningError:
            logger.critical("Crop planner invariant broken for %s", source, exc_info=True)
            raise
        except ConfigurationError:
            raise
        except HeadshotError as e:
            lifecycle.advance(FileState.FAILED)
            return ProcessResult.failed(source, ErrorKind(e.kind), e.message)
        except Exception as e:
            lifecycle.advance(FileState.FAILED)
            logger.exception("Unexpected error processing %s", source)
            return ProcessResult.failed(source, ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")

    # ---- batch -----------------------------------------------------------

    def _emit(self, event: ProgressEvent) -> None:
        if self.progress_callback is not None:
            self.progress_callback(event)

    def _record(self, accumulator: SummaryAccumulator, index: int, result: ProcessResult) -> None:
        accumulator.record(index, result)
        name = Path(result.source_path).name
        if result.status == ProcessStatus.SUCCEEDED:
            logger.debug("Cropped %s -> %s (%d face(s))", name, result.output_path, result.face_count)
        elif result.status == ProcessStatus.SKIPPED:
            logger.debug("Skipped %s: %s", name, result.skip_reason.value)
        else:
            logger.warning("Error processing %s: %s: %s", result.source_path, result.error_kind.value, result.message)

        self._emit(ProgressEvent(
            kind=ProgressKind.PROGRESS,
            filename=name,
            face_count=result.face_count,
            status=result.status,
        ))
        if result.status == ProcessStatus.FAILED:
            self._emit(ProgressEvent(
                kind=ProgressKind.ERROR,
                filename=name,
                status=result.status,
                message=f"Error processing {result.source_path}: {result.error_kind.value}: {result.message}",
            ))

    def _plan_jobs(
        self, paths: Sequence[Path], accumulator: SummaryAccumulator
    ) -> List[Tuple[int, Path, Path]]:
        """
        Assign output paths.

        Inputs whose output would replace an input photo (itself or another),
        or an earlier input's output, are skipped.
        """
        jobs: List[Tuple[int, Path, Path]] = []
        claimed: Dict[Path, Path] = {}
        sources = {p.resolve() for p in paths}
        for index, path in enumerate(paths):
            target = self.output_path_for(path)
            if target.resolve() in sources:
                logger.warning("Output %s for %s would overwrite an input photo; skipping", target, path)
                self._record(accumulator, index, ProcessResult.skipped(str(path), SkipReason.OUTPUT_IS_INPUT))
                continue
            if target in claimed:
                logger.warning("%s would overwrite the output of %s; skipping", path, claimed[target])
                self._record(accumulator, index, ProcessResult.skipped(str(path), SkipReason.DUPLICATE_OUTPUT))
                continue
            claimed[target] = path
            jobs.append((index, path, target))
        return jobs

    def _run_sequential(self, jobs: Sequence[Tuple[int, Path, Path]], accumulator: SummaryAccumulator) -> None:
        for index, path, target in jobs:
            if self.cancelled:
                break
            self._record(accumulator, index, self.process_file(path, target))

    def _run_parallel(self, jobs: Sequence[Tuple[int, Path, Path]], accumulator: SummaryAccumulator) -> None:
        workers = self.config.workers
        max_in_flight = workers * 2
        job_iter = iter(jobs)
        pending: Dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="headshot") as executor:
            try:
                while True:
                    while not self.cancelled and len(pending) < max_in_flight:
                        job = next(job_iter, None)
                        if job is None:
                            break
                        index, path, target = job
                        pending[executor.submit(self.process_file, path, target)] = index
                    if not pending:
                        break
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        index = pending.pop(future)
                        self._record(accumulator, index, future.result())
            except KeyboardInterrupt:
                self.cancel()
                # Let in-flight files finish and keep their results
                for future, index in pending.items():
                    self._record(accumulator, index, future.result())
                raise
            except BaseException:
                self.cancel()
                raise

    def run(self, inputs: Iterable[Union[str, Path]]) -> RunSummary:
        """
        Process all inputs and return the summary.

        Results keep the order of `inputs`. Raises PlanningError or
        ConfigurationError as described in the module docstring.
        """
        paths = [Path(p) for p in inputs]
        accumulator = SummaryAccumulator(paths)
        logger.info("Processing %d image(s) with %d worker(s)", len(paths), self.config.workers)

        try:
            jobs = self._plan_jobs(paths, accumulator)
            if self.config.workers > 1:
                self._run_parallel(jobs, accumulator)
            else:
                self._run_sequential(jobs, accumulator)
        except KeyboardInterrupt:
            logger.warning("Interrupted; in-flight files were allowed to finish")
            self.cancel()
        finally:
            self._close_detectors()

        summary = accumulator.finalize(cancelled=self.cancelled)
        logger.info(
            "Done: %d total, %d succeeded, %d skipped, %d failed%s",
            summary.total,
            summary.succeeded,
            summary.skipped,
            summary.failed,
            " (cancelled)" if summary.cancelled else "",
        )
        self._emit(ProgressEvent(kind=ProgressKind.COMPLETE))
        return summary


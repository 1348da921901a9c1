"""Merge several plate jobs into one G-code program.

Jobs are emitted in order, each wrapped in banners. Between jobs a
plate-change routine is spliced in front of the printer's finish marker so
the printer swaps the build plate and carries on with the next job.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

import diagnostics as diag
from config import PlateChangeRoutine, PrinterProfile
from diagnostics import Diagnostic, Severity
from gcode_routine import MarkerNotFoundError
from plate_job import PlateJob
from plate_validator import PlateValidator

logger = logging.getLogger(__name__)

BANNER = "; PLATECHAIN:"


class CompilationError(Exception):
    """Raised by CompileResult.raise_for_failure() for a failed merge."""

    def __init__(self, failure: "CompileFailure", diagnostics: Sequence[Diagnostic]):
        super().__init__(failure.message)
        self.failure = failure
        self.diagnostics = list(diagnostics)


class MissingRoutinePolicy(Enum):
    ABORT = "abort"  # the whole merge fails, no output
    SKIP_JOB = "skip_job"  # drop the offending job and keep merging


class FailureKind(Enum):
    MISSING_ROUTINE = "missing_routine"
    MISSING_FINISH_MARKER = "missing_finish_marker"


@dataclass(frozen=True)
class CompileFailure:
    kind: FailureKind
    job_name: str
    job_index: int  # 1-based
    message: str


@dataclass
class CompileResult:
    output: str
    total_print_time: timedelta
    diagnostics: List[Diagnostic] = field(default_factory=list)
    failure: Optional[CompileFailure] = None
    skipped_jobs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def has_errors(self) -> bool:
        return diag.has_errors(self.diagnostics)

    @property
    def has_warnings(self) -> bool:
        return diag.has_warnings(self.diagnostics)

    @property
    def errors(self) -> List[Diagnostic]:
        return diag.of_severity(self.diagnostics, Severity.ERROR)

    @property
    def warnings(self) -> List[Diagnostic]:
        return diag.of_severity(self.diagnostics, Severity.WARNING)

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise CompilationError(self.failure, self.diagnostics)


def format_duration(duration: timedelta) -> str:
    """H:MM:SS with total hours (not wrapped at 24)."""
    total = int(duration.total_seconds())
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def total_print_time(jobs: Iterable[PlateJob]) -> timedelta:
    return sum((job.print_time for job in jobs), timedelta(0))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobCompiler:
    """Validates and merges plate jobs for a target printer."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self.clock = clock

    def compile(
        self,
        jobs: Sequence[PlateJob],
        printer: PrinterProfile,
        routine: Optional[PlateChangeRoutine] = None,
        missing_routine_policy: MissingRoutinePolicy = MissingRoutinePolicy.ABORT,
    ) -> CompileResult:
        """Merge ``jobs`` in order into a single program.

        Args:
            jobs: Jobs in display order; never mutated
            printer: Target printer profile
            routine: Override plate-change routine; takes precedence over each job's own
            missing_routine_policy: What to do when a non-last job cannot get a routine

        Returns:
            CompileResult. On failure ``output`` is empty and ``failure`` is set.
        """
        job_list = list(jobs)
        diagnostics: List[Diagnostic] = []
        validator = PlateValidator(printer)
        total_time = total_print_time(job_list)
        skipped: List[str] = []
        body: List[str] = []

        logger.info(f"Compiling {len(job_list)} job(s) for {printer.display_name}")
        if not job_list:
            diagnostics.append(diag.info("No jobs to compile", diag.COMPILER))

        count = len(job_list)
        for index, job in enumerate(job_list):
            position = index + 1
            is_last = position == count
            segment: List[str] = [
                f"{BANNER} Start of Job {position}/{count}: '{job.plate_name}'",
                f"{BANNER} Print Time: {format_duration(job.print_time)}",
                f"{BANNER} Filaments: {', '.join(f.kind.value for f in job.filaments)}",
                "",
            ]

            diagnostics.extend(validator.validate(job.gcode, job.plate_name))
            diagnostics.extend(self._check_compatibility(job, printer))

            active = routine or job.routine
            compiled = job.gcode
            failure = None

            if not is_last:
                if active is None:
                    failure = CompileFailure(
                        FailureKind.MISSING_ROUTINE, job.plate_name, position,
                        f"No plate change routine specified for job '{job.plate_name}' (not last job)",
                    )
                else:
                    try:
                        compiled = job.gcode.insert_before(printer.is_print_finished, active.gcode)
                    except MarkerNotFoundError:
                        failure = CompileFailure(
                            FailureKind.MISSING_FINISH_MARKER, job.plate_name, position,
                            f"Cannot inject plate change routine '{active.name}' into job "
                            f"'{job.plate_name}': finish marker not found",
                        )
                    else:
                        diagnostics.append(diag.info(
                            f"Injected plate change routine '{active.name}' for job '{job.plate_name}'",
                            diag.COMPILER,
                        ))

            if failure is not None:
                diagnostics.append(diag.error(failure.message, diag.COMPILER))
                if missing_routine_policy is MissingRoutinePolicy.ABORT:
                    logger.error(f"Compilation aborted: {failure.message}")
                    return CompileResult("", total_time, diagnostics, failure, skipped)
                diagnostics.append(diag.warning(f"Skipping job '{job.plate_name}'", diag.COMPILER))
                skipped.append(job.plate_name)
                continue

            segment.extend(compiled.lines)
            segment.extend(["", f"{BANNER} End of Job {position}/{count}: '{job.plate_name}'", ""])
            body.extend(segment)

        header = [
            f"{BANNER} Total Jobs: {count}",
            f"{BANNER} Estimated Time: {format_duration(total_time)}",
            f"{BANNER} Generated: {self.clock().isoformat()}",
            f"{BANNER} Printer: {printer.display_name}",
            "",
        ]
        footer = [f"{BANNER} Compilation Complete"]
        output = "\n".join(header + body + footer) + "\n"

        diag.log_diagnostics(logger, diagnostics)
        logger.info(
            f"Compiled {count - len(skipped)} job(s), total time {format_duration(total_time)}, "
            f"{len(diagnostics)} diagnostic(s)"
        )
        return CompileResult(output, total_time, diagnostics, None, skipped)

    async def compile_async(
        self,
        jobs: Sequence[PlateJob],
        printer: PrinterProfile,
        routine: Optional[PlateChangeRoutine] = None,
        missing_routine_policy: MissingRoutinePolicy = MissingRoutinePolicy.ABORT,
    ) -> CompileResult:
        """Async version of compile; runs in a worker thread."""
        return await asyncio.to_thread(self.compile, jobs, printer, routine, missing_routine_policy)

    @staticmethod
    def _check_compatibility(job: PlateJob, printer: PrinterProfile) -> List[Diagnostic]:
        findings = []
        if job.routine is not None and job.routine.model != printer.model:
            findings.append(diag.warning(
                f"[{job.plate_name}] Plate change routine '{job.routine.name}' is for "
                f"{job.routine.model.value}, but printer is {printer.model.value}",
                diag.COMPILER,
            ))
        if not printer.has_ams and len(job.filaments) > 1:
            findings.append(diag.warning(
                f"[{job.plate_name}] Job uses {len(job.filaments)} filaments but printer has no AMS",
                diag.COMPILER,
            ))
        return findings

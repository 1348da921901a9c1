"""
Shared compile-and-export pipeline.

Takes the loaded jobs through selection, compilation, packaging and saving,
and keeps a human-readable log of what happened for the front end to show.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import diagnostics as diag
from builder_3mf import ThreeMFBuildError, ThreeMFBuilder
from config import PlateChangeRoutine, PrinterProfile, PrinterRegistry, default_registry
from diagnostics import Diagnostic
from file_service import ByteSink, suggest_output_name
from gcode_compiler import CompileResult, JobCompiler, MissingRoutinePolicy, format_duration
from gcode_embedder import GCodeEmbedder, GCodeEmbedError
from packager import PackageMode, package_jobs
from plate_job import PlateJob

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    compile_result: Optional[CompileResult] = None
    data: Optional[bytes] = None
    suggested_name: Optional[str] = None
    saved: bool = False
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_lines: List[str] = field(default_factory=list)

    @property
    def packaged(self) -> bool:
        return self.data is not None

    def log(self, line: str) -> None:
        self.log_lines.append(line)
        logger.info(line)


class MergeWorkflow:
    """Compile selected jobs for one printer and hand the package to a sink."""

    def __init__(
        self,
        registry: Optional[PrinterRegistry] = None,
        compiler: Optional[JobCompiler] = None,
        builder: Optional[ThreeMFBuilder] = None,
        embedder: Optional[GCodeEmbedder] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry or default_registry()
        self.compiler = compiler or JobCompiler()
        self.builder = builder or ThreeMFBuilder()
        self.embedder = embedder or GCodeEmbedder()
        self.clock = clock

    @staticmethod
    def selected_jobs(jobs: Sequence[PlateJob]) -> List[PlateJob]:
        return [job for job in jobs if job.selected]

    def total_print_time(self, jobs: Sequence[PlateJob]) -> timedelta:
        return sum((job.print_time for job in self.selected_jobs(jobs)), timedelta(0))

    def compile_and_export(
        self,
        jobs: Sequence[PlateJob],
        printer: Optional[PrinterProfile] = None,
        routine: Optional[PlateChangeRoutine] = None,
        sink: Optional[ByteSink] = None,
        mode: PackageMode = PackageMode.AUTO,
        missing_routine_policy: MissingRoutinePolicy = MissingRoutinePolicy.ABORT,
    ) -> MergeOutcome:
        """Compile the selected jobs, package them, and save through ``sink``.

        Args:
            jobs: All loaded jobs; only selected ones are merged, in order
            printer: Target printer; registry default when omitted
            routine: Override plate-change routine
            sink: Where to save; when omitted the bytes are only returned
            mode: Packaging mode
            missing_routine_policy: Passed to the compiler

        Returns:
            MergeOutcome. Compile errors stop before packaging.
        """
        outcome = MergeOutcome()
        printer = printer or self.registry.default_profile
        selected = self.selected_jobs(jobs)

        if not selected:
            outcome.diagnostics.append(diag.warning("No jobs selected for compilation", diag.COMPILER))
            outcome.log("⚠ No jobs selected for compilation")
            return outcome

        outcome.log(f"Compiling {len(selected)} selected job(s)...")
        result = self.compiler.compile(selected, printer, routine, missing_routine_policy)
        outcome.compile_result = result
        outcome.diagnostics.extend(result.diagnostics)

        if result.has_errors:
            outcome.log("✗ Compilation failed with errors:")
            for error in result.errors:
                outcome.log(f"  ✗ {error}")
            return outcome

        if result.has_warnings:
            outcome.log("⚠ Compilation succeeded with warnings:")
            for warning in result.warnings:
                outcome.log(f"  ⚠ {warning}")

        outcome.log("Packaging into 3MF format...")
        try:
            outcome.data = package_jobs(
                result.output, selected, printer, mode,
                builder=self.builder, embedder=self.embedder,
            )
        except (GCodeEmbedError, ThreeMFBuildError) as e:
            outcome.diagnostics.append(diag.error(str(e), diag.PACKAGER))
            outcome.log(f"✗ Error: {e}")
            return outcome

        outcome.suggested_name = suggest_output_name(selected, self.clock())

        if sink is None:
            outcome.log(f"✓ Compilation successful! Total time: {format_duration(result.total_print_time)}")
            return outcome

        outcome.saved = sink.save(outcome.data, outcome.suggested_name)
        if outcome.saved:
            outcome.log(f"✓ Compilation successful! Total time: {format_duration(result.total_print_time)}")
            outcome.log(f"✓ Exported as 3MF package: {outcome.suggested_name}")
        else:
            outcome.log("⚠ Compilation succeeded but save was cancelled")
        return outcome

    async def compile_and_export_async(
        self,
        jobs: Sequence[PlateJob],
        printer: Optional[PrinterProfile] = None,
        routine: Optional[PlateChangeRoutine] = None,
        sink: Optional[ByteSink] = None,
        mode: PackageMode = PackageMode.AUTO,
        missing_routine_policy: MissingRoutinePolicy = MissingRoutinePolicy.ABORT,
    ) -> MergeOutcome:
        """Async version of compile_and_export; runs in a worker thread."""
        return await asyncio.to_thread(
            self.compile_and_export, jobs, printer, routine, sink, mode, missing_routine_policy
        )

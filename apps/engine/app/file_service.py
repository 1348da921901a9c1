"""Loading plate files and exporting compiled packages.

The caller supplies file contents (bytes plus a display name) and a sink that
stores the output; picking files and save locations is the caller's job.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence

import diagnostics as diag
from archive_extractor import ThreeMFExtractor
from config import PrinterRegistry, default_registry
from diagnostics import Diagnostic, Severity
from gcode_parser import PLATE_EXTENSIONS, GCodeParser
from plate_job import PlateJob

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = ".3mf"
OUTPUT_SUFFIX = ".gcode.3mf"


@dataclass(frozen=True)
class SourceFile:
    name: str
    data: bytes


@dataclass
class FileLoadResult:
    jobs: List[PlateJob] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return diag.has_errors(self.diagnostics)

    @property
    def has_warnings(self) -> bool:
        return diag.has_warnings(self.diagnostics)

    @property
    def is_success(self) -> bool:
        return bool(self.jobs) and not self.has_errors

    @property
    def errors(self) -> List[Diagnostic]:
        return diag.of_severity(self.diagnostics, Severity.ERROR)

    @property
    def warnings(self) -> List[Diagnostic]:
        return diag.of_severity(self.diagnostics, Severity.WARNING)


class ByteSink(Protocol):
    def save(self, data: bytes, suggested_name: str) -> bool:
        ...


class DirectorySink:
    """Writes exported packages into a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def save(self, data: bytes, suggested_name: str) -> bool:
        target = self.directory / suggested_name
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Failed to save 3MF to {target}: {e}")
            return False
        logger.info(f"Saved {target} ({len(data)} bytes)")
        return True


def _extension(name: str) -> str:
    return Path(name).suffix.lower()


def decode_gcode(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


class FileService:
    """Turns user-selected files into plate jobs."""

    def __init__(
        self,
        registry: Optional[PrinterRegistry] = None,
        parser: Optional[GCodeParser] = None,
        extractor: Optional[ThreeMFExtractor] = None,
    ):
        self.registry = registry or default_registry()
        self.parser = parser or GCodeParser(self.registry)
        self.extractor = extractor or ThreeMFExtractor(self.parser, self.registry)

    def load_sources(self, sources: Optional[Sequence[SourceFile]]) -> Optional[FileLoadResult]:
        """Load every file; None when nothing was selected.

        One file failing never stops the others; its findings are recorded
        with the file name as prefix.
        """
        if not sources:
            return None

        result = FileLoadResult()
        for source in sources:
            self._load_one(source, result)

        logger.info(
            f"Loaded {len(result.jobs)} job(s) from {len(sources)} file(s), "
            f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)"
        )
        return result

    async def load_sources_async(self, sources: Optional[Sequence[SourceFile]]) -> Optional[FileLoadResult]:
        return await asyncio.to_thread(self.load_sources, sources)

    def load_file_from_path(self, path: Path) -> FileLoadResult:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return FileLoadResult([], [diag.error(f"[{path.name}] File not found or unreadable", diag.LOADER)])
        result = self.load_sources([SourceFile(path.name, data)])
        return result if result is not None else FileLoadResult()

    def _load_one(self, source: SourceFile, result: FileLoadResult) -> None:
        extension = _extension(source.name)
        try:
            if extension == ARCHIVE_EXTENSION:
                extraction = self.extractor.extract_jobs(source.data)
                result.diagnostics.extend(self._retag(extraction.diagnostics, source.name))
                if extraction.jobs:
                    result.jobs.extend(extraction.jobs)
                    result.diagnostics.append(diag.info(
                        f"[{source.name}] Successfully loaded {len(extraction.jobs)} job(s)", diag.LOADER
                    ))
            elif extension in PLATE_EXTENSIONS:
                job = self.load_gcode(decode_gcode(source.data), source.name, result.diagnostics)
                if job is not None:
                    result.jobs.append(job)
                    result.diagnostics.append(diag.info(
                        f"[{source.name}] Successfully loaded G-code file", diag.LOADER
                    ))
            else:
                result.diagnostics.append(diag.warning(
                    f"[{source.name}] Unsupported file type: {extension or '(none)'}", diag.LOADER
                ))
        except Exception as e:
            logger.exception(f"Failed to load {source.name}")
            result.diagnostics.append(diag.error(f"[{source.name}] Failed to load file: {e}", diag.LOADER))

    def load_gcode(self, content: str, file_name: str, diagnostics: List[Diagnostic]) -> Optional[PlateJob]:
        """Standalone plate: no routine and no source package."""
        if not self.parser.validate(content):
            diagnostics.append(diag.error(
                f"[{file_name}] File does not contain valid G-code metadata", diag.LOADER
            ))
            return None

        parsed = self.parser.parse(content, file_name)
        diagnostics.extend(self._retag(parsed.diagnostics, file_name))
        if parsed.has_errors:
            return None

        metadata = parsed.metadata
        return PlateJob(
            plate_name=metadata.plate_name,
            filaments=tuple(metadata.filaments),
            gcode=metadata.gcode,
            printer=self.registry.profile_or_default(metadata.printer_model),
            routine=None,
            print_time=metadata.print_time,
            thumbnail=metadata.thumbnail,
        )

    @staticmethod
    def _retag(findings: Iterable[Diagnostic], file_name: str) -> List[Diagnostic]:
        return [d.with_context(diag.LOADER, file_name) for d in findings]


def suggest_output_name(jobs: Sequence[PlateJob], now: Optional[datetime] = None) -> str:
    if len(jobs) == 1:
        return f"{jobs[0].plate_name}_compiled{OUTPUT_SUFFIX}"
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"multi_job_{len(jobs)}plates_{stamp}{OUTPUT_SUFFIX}"

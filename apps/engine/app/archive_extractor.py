"""Plate job extraction from sliced .gcode.3mf archives.

Bambu Studio / Orca Slicer write one ``Metadata/plate_<n>.gcode`` entry per
sliced plate, with a ``plate_<n>.png`` preview next to it. Plate names live in
``Metadata/model_settings.config`` and the printer identity in
``Metadata/project_settings.config`` (JSON) or the 3D model metadata.
"""

import io
import json
import logging
import posixpath
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import archive_layout
import diagnostics as diag
from config import PlateChangeRoutine, PrinterModel, PrinterProfile, PrinterRegistry, default_registry
from diagnostics import Diagnostic
from gcode_parser import PRINTER_MODEL_MARKER, GCodeParser, find_header_value
from plate_job import PlateJob
from thumbnails import encode_base64

logger = logging.getLogger(__name__)

GCODE_EXTENSION = ".gcode"

# Raised when a single entry's payload is damaged (CRC, deflate stream).
ENTRY_READ_ERRORS = (zipfile.BadZipFile, zlib.error, RuntimeError, OSError)


@dataclass
class ExtractionResult:
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


def read_text(zf: zipfile.ZipFile, name: str) -> str:
    return zf.read(name).decode("utf-8-sig", errors="replace")


def read_optional(zf: zipfile.ZipFile, name: str) -> Optional[bytes]:
    """Bytes of an optional entry; None when it is absent or unreadable."""
    if name not in zf.namelist():
        return None
    try:
        return zf.read(name)
    except ENTRY_READ_ERRORS as e:
        logger.debug(f"Could not read {name}: {e}")
        return None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class ThreeMFExtractor:
    """Turns archive bytes into plate jobs plus diagnostics."""

    def __init__(self, parser: Optional[GCodeParser] = None, registry: Optional[PrinterRegistry] = None):
        self.registry = registry or (parser.registry if parser else default_registry())
        self.parser = parser or GCodeParser(self.registry)

    def extract_jobs(self, data: bytes) -> ExtractionResult:
        """Extract every plate in the archive.

        Args:
            data: Complete archive bytes; kept on each job for clone-and-splice

        Returns:
            ExtractionResult. A corrupt archive yields a single Error and no jobs.
        """
        result = ExtractionResult()
        diagnostics = result.diagnostics

        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
                gcode_entries = [
                    info.filename for info in zf.infolist()
                    if not info.is_dir() and info.filename.lower().endswith(GCODE_EXTENSION)
                ]
                if not gcode_entries:
                    diagnostics.append(diag.error("No G-code files found in 3MF archive", diag.EXTRACTOR))
                    return result

                printer = self._resolve_printer(zf, gcode_entries[0], diagnostics)
                routine = self.registry.default_routine_for(printer.model)
                if routine is None:
                    diagnostics.append(diag.info(
                        f"No plate change routine available for {printer.display_name}. "
                        "Multi-plate jobs will require manual configuration.",
                        diag.EXTRACTOR,
                    ))
                plate_names = self._read_plate_names(zf)

                for entry in gcode_entries:
                    try:
                        job = self._extract_job(zf, entry, printer, routine, plate_names, data, diagnostics)
                    except Exception as e:
                        logger.warning(f"Failed to extract job from '{entry}': {e}")
                        diagnostics.append(diag.error(
                            f"Failed to extract job from '{entry}': {e}", diag.EXTRACTOR
                        ))
                        continue
                    if job is not None:
                        result.jobs.append(job)

        except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, OSError) as e:
            logger.error(f"Failed to read 3MF archive: {e}")
            return ExtractionResult([], [diag.error(f"Failed to read 3MF archive: {e}", diag.EXTRACTOR)])

        if not result.jobs:
            diagnostics.append(diag.error("No valid jobs could be extracted from 3MF file", diag.EXTRACTOR))

        diag.log_diagnostics(logger, diagnostics)
        logger.info(f"Extracted {len(result.jobs)} job(s) from {len(gcode_entries)} G-code entries")
        return result

    def extract_from_path(self, path: Path) -> ExtractionResult:
        path = Path(path)
        if not path.is_file():
            return ExtractionResult([], [diag.error(f"File not found: {path}", diag.EXTRACTOR)])
        return self.extract_jobs(path.read_bytes())

    def _extract_job(
        self,
        zf: zipfile.ZipFile,
        entry: str,
        printer: PrinterProfile,
        routine: Optional[PlateChangeRoutine],
        plate_names: Dict[str, str],
        source: bytes,
        diagnostics: List[Diagnostic],
    ) -> Optional[PlateJob]:
        content = read_text(zf, entry)
        base_name = posixpath.basename(entry)
        label = posixpath.splitext(base_name)[0]

        if not self.parser.validate(content):
            diagnostics.append(diag.error(
                f"[{label}] Required G-code header markers not found", diag.EXTRACTOR
            ))
            diagnostics.append(diag.warning(f"Skipping job '{label}' due to parse errors", diag.EXTRACTOR))
            return None

        parsed = self.parser.parse(content, plate_names.get(entry, label))
        diagnostics.extend(d.with_context(diag.EXTRACTOR, label) for d in parsed.diagnostics)
        if parsed.has_errors:
            diagnostics.append(diag.warning(f"Skipping job '{label}' due to parse errors", diag.EXTRACTOR))
            return None

        metadata = parsed.metadata
        thumbnail = self._read_thumbnail(zf, entry)
        logger.debug(f"Extracted '{metadata.plate_name}' from {entry} (thumbnail: {thumbnail is not None})")

        return PlateJob(
            plate_name=metadata.plate_name,
            filaments=tuple(metadata.filaments),
            gcode=metadata.gcode,
            printer=printer,
            routine=routine,
            print_time=metadata.print_time,
            thumbnail=thumbnail or metadata.thumbnail,
            source_archive=source,
            source_entry=entry,
        )

    def _resolve_printer(self, zf: zipfile.ZipFile, first_gcode: str, diagnostics: List[Diagnostic]) -> PrinterProfile:
        """Project settings, then 3D model metadata, then the G-code header."""
        for source, lookup in (
            ("project settings", self._model_from_project_settings),
            ("3D model metadata", self._model_from_3dmodel),
            ("G-code header", lambda z: self._model_from_gcode(z, first_gcode)),
        ):
            model = lookup(zf)
            if model is not PrinterModel.UNKNOWN:
                profile = self.registry.profile_or_default(model)
                logger.debug(f"Printer resolved from {source}: {profile.display_name}")
                return profile

        profile = self.registry.default_profile
        diagnostics.append(diag.info(
            f"Printer model not found in metadata, defaulting to {profile.display_name}",
            diag.EXTRACTOR,
        ))
        return profile

    def _model_from_project_settings(self, zf: zipfile.ZipFile) -> PrinterModel:
        raw = read_optional(zf, archive_layout.PROJECT_SETTINGS)
        if raw is None:
            return PrinterModel.UNKNOWN
        try:
            settings = json.loads(raw.decode("utf-8-sig", errors="replace"))
        except json.JSONDecodeError as e:
            logger.debug(f"Could not parse project_settings.config: {e}")
            return PrinterModel.UNKNOWN
        if not isinstance(settings, dict):
            return PrinterModel.UNKNOWN
        value = settings.get("printer_model")
        return self.registry.match_model(value if isinstance(value, str) else None)

    def _model_from_3dmodel(self, zf: zipfile.ZipFile) -> PrinterModel:
        raw = read_optional(zf, archive_layout.MODEL)
        if raw is None:
            return PrinterModel.UNKNOWN
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            logger.debug(f"Could not parse 3dmodel.model: {e}")
            return PrinterModel.UNKNOWN

        for element in root:
            if _local_name(element.tag) != "metadata":
                continue
            name = _local_name(element.get("name", ""))
            if "printer" in name.lower():
                model = self.registry.match_model(element.text)
                if model is not PrinterModel.UNKNOWN:
                    return model
        return PrinterModel.UNKNOWN

    def _model_from_gcode(self, zf: zipfile.ZipFile, entry: str) -> PrinterModel:
        raw = read_optional(zf, entry)
        if raw is None:
            return PrinterModel.UNKNOWN
        lines = raw.decode("utf-8-sig", errors="replace").split("\n")
        return self.registry.match_model(find_header_value(lines, PRINTER_MODEL_MARKER))

    @staticmethod
    def _read_plate_names(zf: zipfile.ZipFile) -> Dict[str, str]:
        """gcode_file -> plater_name from model_settings.config."""
        names: Dict[str, str] = {}
        raw = read_optional(zf, archive_layout.MODEL_SETTINGS)
        if raw is None:
            return names
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            logger.debug(f"Could not parse model_settings.config: {e}")
            return names

        for plate in root.findall("plate"):
            gcode_meta = plate.find("metadata[@key='gcode_file']")
            name_meta = plate.find("metadata[@key='plater_name']")
            if gcode_meta is None or name_meta is None:
                continue
            gcode_file = (gcode_meta.get("value") or "").strip().lstrip("/")
            plate_name = (name_meta.get("value") or "").strip()
            if gcode_file and plate_name:
                names[gcode_file] = plate_name
        if names:
            logger.debug(f"Plate names: {names}")
        return names

    @staticmethod
    def _read_thumbnail(zf: zipfile.ZipFile, gcode_entry: str) -> Optional[str]:
        wanted = posixpath.basename(archive_layout.thumbnail_entry_for(gcode_entry)).lower()
        for info in zf.infolist():
            if "Metadata/" in info.filename and posixpath.basename(info.filename).lower() == wanted:
                raw = read_optional(zf, info.filename)
                return encode_base64(raw) if raw is not None else None
        return None

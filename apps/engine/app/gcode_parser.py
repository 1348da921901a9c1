"""G-code metadata extraction from Bambu Studio / Orca Slicer output.

The slicer writes its metadata as header comments, e.g.:

    ; model printing time: 1h 23m 45s; total estimated time: 1h 31m 2s
    ; filament used [g] = 12.34, 3.21
    ; filament_colour = #FF0000;#00FF00
    ; filament_type = PLA;PETG
    ; filament cost = 0.31, 0.08
    ; printer_model = Bambu Lab A1 mini

and optionally a base64 thumbnail between ``; thumbnail begin`` and
``; thumbnail end`` comment lines.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional, Sequence, TypeVar

import diagnostics as diag
from config import PrinterModel, PrinterRegistry, default_registry
from diagnostics import Diagnostic
from gcode_routine import GCodeRoutine
from plate_job import DEFAULT_COLOR, DEFAULT_FILAMENT, Filament, FilamentKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRINT_TIME_MARKER = "; model printing time:"
COLOR_MARKER = "; filament_colour"
WEIGHT_MARKER = "; filament used [g]"
COST_MARKER = "; filament cost"
KIND_MARKER = "; filament_type"
PRINTER_MODEL_MARKER = "; printer_model ="
THUMBNAIL_BEGIN = "; thumbnail begin"
THUMBNAIL_END = "; thumbnail end"

REQUIRED_HEADERS = (PRINT_TIME_MARKER, COLOR_MARKER, WEIGHT_MARKER)
PLATE_EXTENSIONS = (".gcode", ".gco")

PRINT_TIME_PATTERN = re.compile(r'model printing time:\s*(\d+)h\s*(\d+)m\s*(\d+)s', re.IGNORECASE)
COMPACT_TIME_PATTERN = re.compile(r'(\d+)h(\d+)m(\d+)s', re.IGNORECASE)


@dataclass
class ParsedMetadata:
    plate_name: str
    filaments: List[Filament]
    print_time: timedelta
    thumbnail: Optional[str]
    printer_model: PrinterModel
    gcode: GCodeRoutine


@dataclass
class ParseResult:
    metadata: ParsedMetadata
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return diag.has_errors(self.diagnostics)

    @property
    def has_warnings(self) -> bool:
        return diag.has_warnings(self.diagnostics)


def split_lines(content: str) -> List[str]:
    """Split G-code text into lines, dropping line-ending CRs and empty lines."""
    lines = []
    for raw in content.split("\n"):
        line = raw.rstrip("\r")
        if line:
            lines.append(line)
    return lines


def find_header_value(lines: Sequence[str], key: str) -> Optional[str]:
    """Value after '=' on the first line starting with ``key`` (case-insensitive)."""
    key_lower = key.lower()
    for line in lines:
        if line.lower().startswith(key_lower):
            _, sep, value = line.partition("=")
            return value.strip() if sep else None
    return None


def parse_print_time(text: str) -> Optional[timedelta]:
    """Parse '1h 23m 45s' (or the compact '1h23m45s') from a printing-time line."""
    match = PRINT_TIME_PATTERN.search(text) or COMPACT_TIME_PATTERN.search(text)
    if not match:
        return None
    hours, minutes, seconds = (int(g) for g in match.groups())
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def plate_name_from_file(file_name: str) -> str:
    name = file_name.strip()
    for extension in PLATE_EXTENSIONS:
        if name.lower().endswith(extension):
            name = name[:-len(extension)]
            break
    return name.strip()


def _parse_list(raw: Optional[str], separator: str, convert: Callable[[str], T]) -> List[T]:
    if not raw or not raw.strip():
        return []
    return [convert(part.strip()) for part in raw.split(separator) if part.strip()]


def _try_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


class GCodeParser:
    """Extracts plate metadata from slicer G-code text."""

    def __init__(self, registry: Optional[PrinterRegistry] = None):
        self.registry = registry or default_registry()

    def validate(self, content: Optional[str]) -> bool:
        """True when all required header markers are present."""
        if not content or not content.strip():
            return False
        lowered = content.lower()
        return all(marker in lowered for marker in REQUIRED_HEADERS)

    def parse(self, content: str, file_name: str) -> ParseResult:
        diagnostics: List[Diagnostic] = []
        lines = split_lines(content)

        plate_name = plate_name_from_file(file_name)
        printer_model = self._determine_printer_model(lines, diagnostics)
        print_time = self._parse_print_time(lines, diagnostics)

        colors = self._parse_colors(lines, diagnostics)
        weights = self._parse_weights(lines, diagnostics)
        costs = _parse_list(find_header_value(lines, COST_MARKER), ",",
                            lambda v: _try_float(v) or 0.0)
        kinds = self._parse_kinds(lines, diagnostics)
        filaments = build_filaments(colors, weights, costs, kinds, diagnostics)

        metadata = ParsedMetadata(
            plate_name=plate_name,
            filaments=filaments,
            print_time=print_time,
            thumbnail=extract_thumbnail(lines),
            printer_model=printer_model,
            gcode=GCodeRoutine(lines),
        )
        logger.debug(
            f"Parsed '{plate_name}': {len(lines)} lines, {len(filaments)} filament(s), "
            f"model={printer_model.value}, time={print_time}"
        )
        return ParseResult(metadata, diagnostics)

    def _determine_printer_model(self, lines: Sequence[str], diagnostics: List[Diagnostic]) -> PrinterModel:
        value = find_header_value(lines, PRINTER_MODEL_MARKER)
        if not value:
            diagnostics.append(diag.warning("Printer model not found in G-code header", diag.PARSER))
            return PrinterModel.UNKNOWN

        model = self.registry.match_model(value)
        if model is PrinterModel.UNKNOWN:
            diagnostics.append(diag.info(f"Unknown printer model: {value}", diag.PARSER))
        return model

    @staticmethod
    def _parse_print_time(lines: Sequence[str], diagnostics: List[Diagnostic]) -> timedelta:
        marker = PRINT_TIME_MARKER.lower()
        time_line = next((l for l in lines if marker in l.lower()), None)
        if time_line is None:
            diagnostics.append(diag.warning("Print time not found in G-code", diag.PARSER))
            return timedelta(0)

        parsed = parse_print_time(time_line)
        if parsed is None:
            diagnostics.append(diag.warning("Could not parse print time format", diag.PARSER))
            return timedelta(0)
        return parsed

    @staticmethod
    def _parse_colors(lines: Sequence[str], diagnostics: List[Diagnostic]) -> List[str]:
        raw = find_header_value(lines, COLOR_MARKER)
        if not raw:
            diagnostics.append(diag.warning("Filament colors not found", diag.PARSER))
            return []
        return _parse_list(raw, ";", lambda c: c if c.startswith("#") else f"#{c}")

    @staticmethod
    def _parse_weights(lines: Sequence[str], diagnostics: List[Diagnostic]) -> List[float]:
        raw = find_header_value(lines, WEIGHT_MARKER)
        if not raw:
            diagnostics.append(diag.warning("Filament weights not found", diag.PARSER))
            return []

        def convert(value: str) -> float:
            weight = _try_float(value)
            if weight is None:
                diagnostics.append(diag.warning(f"Invalid weight value: {value}", diag.PARSER))
                return 0.0
            return weight

        return _parse_list(raw, ",", convert)

    @staticmethod
    def _parse_kinds(lines: Sequence[str], diagnostics: List[Diagnostic]) -> List[str]:
        raw = find_header_value(lines, KIND_MARKER)
        if not raw:
            diagnostics.append(diag.info("Filament types not found, defaulting to PLA", diag.PARSER))
            return []
        return _parse_list(raw, ";", lambda k: k)


def build_filaments(
    colors: Sequence[str],
    weights: Sequence[float],
    costs: Sequence[float],
    kinds: Sequence[str],
    diagnostics: List[Diagnostic],
) -> List[Filament]:
    """Zip the header lists positionally, filling gaps with defaults.

    Costs are per plate; cost per kg is derived from the plate weight. A
    positive cost with zero weight cannot be converted and yields 0 with a
    warning.
    """
    count = max(len(colors), len(weights), len(kinds))
    if count == 0:
        diagnostics.append(diag.warning(
            "No filament data found, using default single filament", diag.PARSER
        ))
        return [DEFAULT_FILAMENT]

    filaments = []
    for i in range(count):
        color = colors[i] if i < len(colors) else DEFAULT_COLOR
        weight = weights[i] if i < len(weights) else 0.0
        cost = costs[i] if i < len(costs) else 0.0
        kind = FilamentKind.parse(kinds[i]) if i < len(kinds) else FilamentKind.PLA

        cost_per_kg = 0.0
        if cost > 0:
            if weight > 0:
                cost_per_kg = cost * 1000 / weight
            else:
                diagnostics.append(diag.warning(
                    f"Filament {i + 1} has cost {cost} but no weight; cost per kg set to 0",
                    diag.PARSER,
                ))

        filaments.append(Filament(
            color_hex=color,
            cost_per_kg=cost_per_kg,
            weight_grams=weight,
            kind=kind,
        ))
    return filaments


def extract_thumbnail(lines: Sequence[str]) -> Optional[str]:
    """Concatenate the base64 body of the first thumbnail comment block."""
    begin = THUMBNAIL_BEGIN.lower()
    end = THUMBNAIL_END.lower()
    in_thumbnail = False
    chunks = []

    for line in lines:
        lowered = line.lower()
        if begin in lowered:
            in_thumbnail = True
            continue
        if end in lowered:
            break
        if in_thumbnail and line.startswith(";"):
            data = line.lstrip("; ")
            if data.strip():
                chunks.append(data.strip())

    return "".join(chunks) if chunks else None

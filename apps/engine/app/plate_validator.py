"""Plate G-code safety validation.

Checks a plate program against a printer profile in a single pass:
finish-marker presence, nozzle/bed temperature limits, and motion bounds.
Motion is always checked against the extended envelope (parking and
maintenance travel included); once the print has started, moves are also
checked against the printable bed.
"""

import logging
from enum import Enum
from typing import List, Optional

import diagnostics as diag
from config import PrinterProfile
from diagnostics import Diagnostic
from gcode_routine import GCodeRoutine

logger = logging.getLogger(__name__)

# Z height (mm) below which an extruding move counts as the first layer.
FIRST_LAYER_THRESHOLD = 1.0

NOZZLE_TEMP_COMMANDS = ("M104", "M109")
BED_TEMP_COMMANDS = ("M140", "M190")
MOTION_COMMANDS = ("G0 ", "G1 ")


class PrintPhase(Enum):
    NOT_YET_PRINTING = "not_yet_printing"
    PRINTING = "printing"


def is_motion_command(line: str) -> bool:
    upper = line.upper()
    return upper.startswith(MOTION_COMMANDS)


def strip_inline_comment(line: str) -> str:
    return line.split(";", 1)[0]


def _numeric_run(line: str, start: int, allowed: str) -> Optional[float]:
    end = start
    while end < len(line) and (line[end].isdigit() or line[end] in allowed):
        end += 1
    try:
        return float(line[start:end])
    except ValueError:
        return None


def extract_axis_value(line: str, axis: str) -> Optional[float]:
    """Signed number following the first occurrence of ``axis``, if any."""
    index = line.find(axis)
    if index < 0:
        return None
    return _numeric_run(line, index + 1, ".-")


def extract_temperature(line: str) -> Optional[float]:
    """Number following the first 'S' parameter marker, if any."""
    index = line.find("S")
    if index < 0:
        return None
    return _numeric_run(line, index + 1, ".")


def _fmt(value: float) -> str:
    return f"{value:g}"


class PlateValidator:
    """Validates plate G-code against a printer's safety envelope."""

    def __init__(self, printer_profile: PrinterProfile):
        """Initialize validator with printer profile.

        Args:
            printer_profile: PrinterProfile with envelopes, temperature limits and finish marker
        """
        self.printer = printer_profile

    def validate(self, gcode: GCodeRoutine, job_name: str) -> List[Diagnostic]:
        """Scan every line once and return the findings.

        Args:
            gcode: Plate program
            job_name: Name used to prefix every message

        Returns:
            Diagnostics tagged with the validator layer; line numbers are 1-based
        """
        diagnostics: List[Diagnostic] = []
        found_finish_marker = False
        phase = PrintPhase.NOT_YET_PRINTING
        current_z = 0.0

        for index, raw_line in enumerate(gcode.lines):
            line_number = index + 1
            line = raw_line.strip()

            if self.printer.is_print_finished(line):
                found_finish_marker = True

            if not line or line.startswith(";"):
                continue

            command = strip_inline_comment(line)
            upper = command.upper()
            motion = is_motion_command(command)

            if motion:
                z = extract_axis_value(command, "Z")
                if z is not None:
                    current_z = z

                if (phase is PrintPhase.NOT_YET_PRINTING
                        and 0 < current_z < FIRST_LAYER_THRESHOLD
                        and extract_axis_value(command, "E") is not None):
                    phase = PrintPhase.PRINTING
                    logger.debug(f"[{job_name}] printing phase starts at line {line_number}")

            if upper.startswith(NOZZLE_TEMP_COMMANDS):
                temp = extract_temperature(command)
                if temp is not None and temp > self.printer.max_nozzle_temp:
                    diagnostics.append(diag.warning(
                        f"[{job_name}] Nozzle temp {_fmt(temp)}°C exceeds max "
                        f"{_fmt(self.printer.max_nozzle_temp)}°C",
                        diag.VALIDATOR, line_number,
                    ))

            if upper.startswith(BED_TEMP_COMMANDS):
                temp = extract_temperature(command)
                if temp is not None and temp > self.printer.max_bed_temp:
                    diagnostics.append(diag.warning(
                        f"[{job_name}] Bed temp {_fmt(temp)}°C exceeds max "
                        f"{_fmt(self.printer.max_bed_temp)}°C",
                        diag.VALIDATOR, line_number,
                    ))

            if motion:
                diagnostics.extend(self._check_move(command, job_name, line_number, phase))

        if not found_finish_marker:
            diagnostics.append(diag.error(
                f"[{job_name}] Print-finished marker '{self.printer.print_finished_marker}' not found",
                diag.VALIDATOR,
            ))

        return diagnostics

    def _check_move(self, line: str, job_name: str, line_number: int, phase: PrintPhase) -> List[Diagnostic]:
        """Check one G0/G1 line against the extended and, when printing, the printable envelope."""
        x = extract_axis_value(line, "X")
        y = extract_axis_value(line, "Y")
        z = extract_axis_value(line, "Z")
        findings: List[Diagnostic] = []

        extended = self.printer.extended_bed
        for axis, value, low, high in (
            ("X", x, extended.min_x, extended.max_x),
            ("Y", y, extended.min_y, extended.max_y),
            ("Z", z, extended.min_z, extended.max_z),
        ):
            if value is not None and (value < low or value > high):
                findings.append(diag.error(
                    f"[{job_name}] {axis} position {value:.2f} is outside safe bounds "
                    f"({low:.0f} to {high:.0f})",
                    diag.VALIDATOR, line_number,
                ))

        if phase is PrintPhase.PRINTING:
            bed = self.printer.printable_bed
            for axis, value, limit, label in (
                ("X", x, bed.width, "width"),
                ("Y", y, bed.length, "length"),
                ("Z", z, bed.height, "height"),
            ):
                if value is not None and (value < 0 or value > limit):
                    findings.append(diag.warning(
                        f"[{job_name}] Print move {axis} position {value:.2f} outside printable "
                        f"bed {label} (0-{_fmt(limit)})",
                        diag.VALIDATOR, line_number,
                    ))

        return findings

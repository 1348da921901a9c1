"""Plate job and filament records shared by the loader, compiler and packager."""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional, Tuple

from config import PlateChangeRoutine, PrinterProfile
from gcode_routine import GCodeRoutine


class FilamentKind(str, Enum):
    PLA = "PLA"
    PETG = "PETG"
    ABS = "ABS"
    TPU = "TPU"
    ASA = "ASA"
    HIPS = "HIPS"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FilamentKind":
        """Case-insensitive lookup; anything unrecognised is OTHER."""
        if value:
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        return cls.OTHER


DEFAULT_COLOR = "#FFFFFF"


@dataclass(frozen=True)
class Filament:
    color_hex: str
    cost_per_kg: float
    weight_grams: float
    kind: FilamentKind


DEFAULT_FILAMENT = Filament(
    color_hex=DEFAULT_COLOR,
    cost_per_kg=0.0,
    weight_grams=0.0,
    kind=FilamentKind.PLA,
)


@dataclass(eq=False)
class PlateJob:
    """One printable plate: its G-code program plus metadata.

    Everything except ``selected`` is treated as read-only once the job is
    built; the compiler and packager never mutate a job. ``source_archive``
    holds the original container bytes when the job came from a 3MF.
    """
    plate_name: str
    filaments: Tuple[Filament, ...]
    gcode: GCodeRoutine
    printer: PrinterProfile
    routine: Optional[PlateChangeRoutine] = None
    print_time: timedelta = timedelta(0)
    thumbnail: Optional[str] = None  # base64-encoded image
    source_archive: Optional[bytes] = None
    source_entry: Optional[str] = None
    selected: bool = True

    def __post_init__(self):
        self.filaments = tuple(self.filaments) or (DEFAULT_FILAMENT,)

    @property
    def total_weight_grams(self) -> float:
        return sum(f.weight_grams for f in self.filaments)

    @property
    def from_archive(self) -> bool:
        return self.source_archive is not None

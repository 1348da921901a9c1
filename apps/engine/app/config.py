"""Printer profiles, plate-change routines, and the registry that holds them.

Components receive a ``PrinterRegistry`` explicitly. ``default_registry()``
builds the built-in Bambu Lab A1 / A1 mini catalog; ``load_registry()`` reads
an alternative catalog from JSON.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from gcode_routine import GCodeRoutine

logger = logging.getLogger(__name__)

PRINT_FINISHED_MARKER = ";=====printer finish  sound========="


class RegistryError(Exception):
    """Raised for unknown profiles/routines or an invalid registry file."""
    pass


class PrinterModel(str, Enum):
    UNKNOWN = "Unknown"
    A1 = "A1"
    A1M = "A1M"


@dataclass(frozen=True)
class BedSize:
    """Printable bed cuboid anchored at the origin (mm)."""
    width: float
    length: float
    height: float

    def contains(self, x: Optional[float], y: Optional[float], z: Optional[float]) -> bool:
        if x is not None and (x < 0 or x > self.width):
            return False
        if y is not None and (y < 0 or y > self.length):
            return False
        if z is not None and (z < 0 or z > self.height):
            return False
        return True


@dataclass(frozen=True)
class ExtendedBedSize:
    """Full safe travel volume, including parking and maintenance positions (mm)."""
    min_x: float
    max_x: float
    min_y: float
    max_y: float
    min_z: float
    max_z: float

    def contains(self, x: Optional[float], y: Optional[float], z: Optional[float]) -> bool:
        if x is not None and (x < self.min_x or x > self.max_x):
            return False
        if y is not None and (y < self.min_y or y > self.max_y):
            return False
        if z is not None and (z < self.min_z or z > self.max_z):
            return False
        return True

    @classmethod
    def from_bed_size(cls, bed: BedSize, margin: float = 0.0) -> "ExtendedBedSize":
        return cls(
            min_x=-margin,
            max_x=bed.width + margin,
            min_y=-margin,
            max_y=bed.length + margin,
            min_z=-margin,
            max_z=bed.height + margin,
        )


@dataclass(frozen=True)
class PrinterProfile:
    display_name: str
    model: PrinterModel
    printable_bed: BedSize
    extended_bed: ExtendedBedSize
    print_finished_marker: str
    max_nozzle_temp: float  # °C
    max_bed_temp: float  # °C
    has_ams: bool
    model_id: str = ""  # Bambu printer_model_id written to slice_info
    aliases: tuple = ()
    nozzle_diameter: float = 0.4

    def is_print_finished(self, line: str) -> bool:
        return line.strip() == self.print_finished_marker.strip()


@dataclass(frozen=True)
class PlateChangeRoutine:
    name: str
    description: str
    model: PrinterModel
    gcode: GCodeRoutine = field(compare=False)


A1_PROFILE = PrinterProfile(
    display_name="Bambu Lab A1",
    model=PrinterModel.A1,
    printable_bed=BedSize(256.0, 256.0, 256.0),
    extended_bed=ExtendedBedSize.from_bed_size(BedSize(256.0, 256.0, 256.0), margin=20.0),
    print_finished_marker=PRINT_FINISHED_MARKER,
    max_nozzle_temp=300.0,
    max_bed_temp=100.0,
    has_ams=False,
    model_id="N2S",
    aliases=("Bambu Lab A1", "A1"),
)

A1_MINI_PROFILE = PrinterProfile(
    display_name="Bambu Lab A1 Mini",
    model=PrinterModel.A1M,
    printable_bed=BedSize(180.0, 180.0, 180.0),
    extended_bed=ExtendedBedSize(
        min_x=-30.0, max_x=190.0,
        min_y=-20.0, max_y=190.0,
        min_z=-5.0, max_z=185.0,
    ),
    print_finished_marker=PRINT_FINISHED_MARKER,
    max_nozzle_temp=300.0,
    max_bed_temp=100.0,
    has_ams=False,
    model_id="N1",
    aliases=("Bambu Lab A1 mini", "A1 Mini", "A1M"),
)

SWAPMOD_GCODE = [
    "G0 X-10 F5000;  park extruder",
    "G0 Z175; move Z to the top",
    "G0 Y182 F10000; move plate to ejecting position",
    "G0 Z180; prepare the lift",
    "G4 P1000; wait",
    "G0 Z186 ; trigger lift",
    "G0 Y120 F500; lift the plate",
    "G0 Y-4 Z175 F5000; slide previous plate and hook new plate",
    "G0 Y145; pull and fix the new plate",
    "G0 Y115 F1000; jump over the hook",
    "G0 Y25 F500; slide down previous plate",
    "G0 Y85 F1000; gently push the old plate",
    "G0 Y180 F5000; pull the new plate",
    "G4 P500; wait",
    "G0 Y186.5 F200;  fix the new plate and release previous plate",
    "G4 P500; wait",
    "G0 Y3 F15000; prepare new plate to be snapped to the heatbed",
    "G0 Y-5 F200; snap the new plate on the front side",
    "G4 P500; wait",
    "G0 Y10 F1000; snap the new plate on the back side",
    "G0 Y20 F15000;",
    "G0 Z150 ;",
    "G4 P1000; wait",
]

AUTO_PLATE_CHANGER_GCODE = [
    "G1 Z180 F3000",
    "G1 Y186 F6000",
    "G1 Z185 F3000",
    "G1 Y-4  F6000",
    "G1 Y186 F6000",
    "G1 Y-4  F6000",
    "G1 Y2.5 F6000",
    "G1 Y-4  F6000",
]


class PrinterRegistry:
    """Catalog of printer profiles and plate-change routines."""

    def __init__(
        self,
        profiles: List[PrinterProfile],
        routines: Optional[List[PlateChangeRoutine]] = None,
        default_routines: Optional[Dict[PrinterModel, str]] = None,
        default_model: Optional[PrinterModel] = None,
    ):
        if not profiles:
            raise RegistryError("Registry needs at least one printer profile")

        self._profiles: Dict[PrinterModel, PrinterProfile] = {}
        for profile in profiles:
            if profile.model in self._profiles:
                raise RegistryError(f"Duplicate printer profile for model {profile.model.value}")
            self._profiles[profile.model] = profile

        self._routines: Dict[str, PlateChangeRoutine] = {}
        for routine in routines or []:
            if routine.name in self._routines:
                raise RegistryError(f"Duplicate plate change routine: {routine.name}")
            self._routines[routine.name] = routine

        self._default_routines: Dict[PrinterModel, str] = dict(default_routines or {})
        for model, routine_name in self._default_routines.items():
            if routine_name not in self._routines:
                raise RegistryError(
                    f"Default routine '{routine_name}' for {model.value} is not registered"
                )

        self.default_model = default_model or profiles[0].model
        if self.default_model not in self._profiles:
            raise RegistryError(f"Default model {self.default_model.value} has no profile")

    @property
    def profiles(self) -> List[PrinterProfile]:
        return list(self._profiles.values())

    @property
    def routines(self) -> List[PlateChangeRoutine]:
        return list(self._routines.values())

    @property
    def default_profile(self) -> PrinterProfile:
        return self._profiles[self.default_model]

    def get_printer_profile(self, model: PrinterModel) -> PrinterProfile:
        if model not in self._profiles:
            raise RegistryError(f"Unknown printer profile: {model.value}")
        return self._profiles[model]

    def profile_or_default(self, model: PrinterModel) -> PrinterProfile:
        return self._profiles.get(model, self.default_profile)

    def get_routine(self, name: str) -> PlateChangeRoutine:
        if name not in self._routines:
            raise RegistryError(f"Unknown plate change routine: {name}")
        return self._routines[name]

    def routines_for(self, model: PrinterModel) -> List[PlateChangeRoutine]:
        return [r for r in self._routines.values() if r.model == model]

    def default_routine_for(self, model: PrinterModel) -> Optional[PlateChangeRoutine]:
        name = self._default_routines.get(model)
        return self._routines[name] if name else None

    def match_model(self, text: Optional[str]) -> PrinterModel:
        """Match free text (a printer_model header, a settings value) to a model.

        Case-insensitive substring match, longest alias first, so the more
        specific "A1 mini" wins over the generic "A1". Bambu model ids match
        exactly.
        """
        if not text or not text.strip():
            return PrinterModel.UNKNOWN

        value = text.strip()
        for profile in self._profiles.values():
            if profile.model_id and value.upper() == profile.model_id.upper():
                return profile.model

        candidates = []
        for profile in self._profiles.values():
            for alias in profile.aliases or (profile.display_name,):
                candidates.append((alias, profile.model))
        candidates.sort(key=lambda item: len(item[0]), reverse=True)

        lowered = value.lower()
        for alias, model in candidates:
            if alias.lower() in lowered:
                return model
        return PrinterModel.UNKNOWN


def default_registry() -> PrinterRegistry:
    """Fresh registry with the built-in A1 / A1 mini profiles and routines."""
    swapmod = PlateChangeRoutine(
        name="A1 Mini - SwapMod",
        description="Plate change routine for the 'SwapMod' by SwapSystems.",
        model=PrinterModel.A1M,
        gcode=GCodeRoutine(SWAPMOD_GCODE),
    )
    auto_plate_changer = PlateChangeRoutine(
        name="A1 Mini - AutoPlateChanger",
        description="Plate change routine for the open-source 'AutoPlateChanger'.",
        model=PrinterModel.A1M,
        gcode=GCodeRoutine(AUTO_PLATE_CHANGER_GCODE),
    )
    return PrinterRegistry(
        profiles=[A1_MINI_PROFILE, A1_PROFILE],
        routines=[swapmod, auto_plate_changer],
        default_routines={PrinterModel.A1M: swapmod.name},
        default_model=PrinterModel.A1M,
    )


# --- JSON registry files -------------------------------------------------

class BedSizeConfig(BaseModel):
    width: float = Field(..., gt=0)
    length: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class ExtendedBedConfig(BaseModel):
    min_x: float
    max_x: float
    min_y: float
    max_y: float
    min_z: float
    max_z: float

    @model_validator(mode="after")
    def _check_ranges(self) -> "ExtendedBedConfig":
        for axis in ("x", "y", "z"):
            if getattr(self, f"min_{axis}") >= getattr(self, f"max_{axis}"):
                raise ValueError(f"extended bed min_{axis} must be below max_{axis}")
        return self


class PrinterConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    display_name: str
    model: PrinterModel
    printable_bed: BedSizeConfig
    extended_bed: Optional[ExtendedBedConfig] = None
    extended_margin: float = Field(0.0, ge=0)
    print_finished_marker: str = PRINT_FINISHED_MARKER
    max_nozzle_temp: float = Field(300.0, gt=0)
    max_bed_temp: float = Field(100.0, gt=0)
    has_ams: bool = False
    model_id: str = ""
    aliases: List[str] = Field(default_factory=list)
    nozzle_diameter: float = Field(0.4, gt=0)

    def to_profile(self) -> PrinterProfile:
        bed = BedSize(**self.printable_bed.model_dump())
        if self.extended_bed is not None:
            extended = ExtendedBedSize(**self.extended_bed.model_dump())
        else:
            extended = ExtendedBedSize.from_bed_size(bed, margin=self.extended_margin)
        return PrinterProfile(
            display_name=self.display_name,
            model=self.model,
            printable_bed=bed,
            extended_bed=extended,
            print_finished_marker=self.print_finished_marker,
            max_nozzle_temp=self.max_nozzle_temp,
            max_bed_temp=self.max_bed_temp,
            has_ams=self.has_ams,
            model_id=self.model_id,
            aliases=tuple(self.aliases),
            nozzle_diameter=self.nozzle_diameter,
        )


class RoutineConfig(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    model: PrinterModel
    gcode: List[str] = Field(..., min_length=1)
    default: bool = False

    def to_routine(self) -> PlateChangeRoutine:
        return PlateChangeRoutine(
            name=self.name,
            description=self.description,
            model=self.model,
            gcode=GCodeRoutine(self.gcode),
        )


class RegistryConfig(BaseModel):
    printers: List[PrinterConfig] = Field(..., min_length=1)
    routines: List[RoutineConfig] = Field(default_factory=list)
    default_model: Optional[PrinterModel] = None


def registry_from_dict(data: Dict[str, Any]) -> PrinterRegistry:
    """Build a registry from an in-memory mapping in registry-file format.

    Raises:
        RegistryError: If the mapping does not validate.
    """
    try:
        config = RegistryConfig.model_validate(data)
    except ValidationError as e:
        raise RegistryError(f"Invalid printer registry: {e}") from e

    default_routines: Dict[PrinterModel, str] = {}
    for routine in config.routines:
        if routine.default:
            default_routines[routine.model] = routine.name

    return PrinterRegistry(
        profiles=[p.to_profile() for p in config.printers],
        routines=[r.to_routine() for r in config.routines],
        default_routines=default_routines,
        default_model=config.default_model,
    )


def load_registry(path: Path) -> PrinterRegistry:
    """Load a printer registry from a JSON file.

    Raises:
        RegistryError: If the file is missing, not JSON, or fails validation.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise RegistryError(f"Registry file not found: {e.filename}") from e
    except json.JSONDecodeError as e:
        raise RegistryError(f"Invalid JSON in registry: {str(e)}") from e

    registry = registry_from_dict(data)
    logger.info(
        f"Loaded printer registry from {path}: "
        f"{len(registry.profiles)} printer(s), {len(registry.routines)} routine(s)"
    )
    return registry

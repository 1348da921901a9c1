"""Build a .gcode.3mf package from scratch around a compiled program.

Used when the merged jobs did not come from an archive (standalone G-code
files), so there is no source package to clone. The result follows the
Bambu Studio layout closely enough for printers and viewers to accept it.
"""

import io
import json
import logging
import xml.etree.ElementTree as ET
import zipfile
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import archive_layout as layout
from config import PrinterProfile
from plate_job import FilamentKind, PlateJob
from thumbnails import thumbnail_png

logger = logging.getLogger(__name__)

APPLICATION = "platechain"
CLIENT_VERSION = "01.00.00.00"


class ThreeMFBuildError(Exception):
    """Raised when 3MF package creation fails."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _xml(root: ET.Element) -> str:
    return layout.XML_DECLARATION + ET.tostring(root, encoding="unicode")


def _fmt_number(value: float) -> str:
    return f"{value:g}"


def combine_filaments(jobs: Sequence[PlateJob]) -> List[Tuple[FilamentKind, str, float]]:
    """(kind, colour, grams) per distinct filament across jobs, in first-seen order."""
    totals: Dict[Tuple[FilamentKind, str], float] = {}
    for job in jobs:
        for filament in job.filaments:
            key = (filament.kind, filament.color_hex.upper())
            totals[key] = totals.get(key, 0.0) + filament.weight_grams
    return [(kind, color, grams) for (kind, color), grams in totals.items()]


class ThreeMFBuilder:
    """Build .gcode.3mf packages.

    The package contains:
    - content types and package relationships
    - a 3D model stub carrying descriptive metadata (no geometry)
    - model settings, project settings and slice info documents
    - the G-code payload with its MD5 side-car
    - the plate thumbnail under every name viewers look for
    """

    NAMESPACE = layout.CORE_NS

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self.clock = clock

    def build(
        self,
        gcode: str,
        jobs: Sequence[PlateJob],
        printer: PrinterProfile,
        title: Optional[str] = None,
    ) -> bytes:
        """Main entry point: package a compiled program.

        Args:
            gcode: Compiled program text
            jobs: Jobs that went into the program (metadata source)
            printer: Target printer profile
            title: Plate/model title; defaults to the first job's name

        Returns:
            Package bytes

        Raises:
            ThreeMFBuildError: If there are no jobs or the package fails validation
        """
        if not jobs:
            raise ThreeMFBuildError("Cannot create 3MF: no jobs provided")

        title = title or (jobs[0].plate_name if len(jobs) == 1 else f"{len(jobs)} plates")
        logger.info(f"Building 3MF for {len(jobs)} job(s), printer {printer.display_name}")

        gcode_bytes = gcode.encode("utf-8")
        thumbnail = next((job.thumbnail for job in jobs if job.thumbnail), None)
        png = thumbnail_png(thumbnail)

        try:
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
                zf.writestr(layout.CONTENT_TYPES, self.create_content_types_xml())
                zf.writestr(layout.PACKAGE_RELS, self.create_relationships_xml())
                zf.writestr(layout.MODEL, self.create_model_xml(title))
                zf.writestr(layout.MODEL_SETTINGS, self.create_model_settings_xml(title))
                zf.writestr(layout.MODEL_SETTINGS_RELS, self.create_model_settings_rels_xml())
                zf.writestr(layout.PROJECT_SETTINGS, self.create_project_settings_config(jobs, printer))
                zf.writestr(layout.SLICE_INFO, self.create_slice_info_xml(jobs, printer))
                zf.writestr(layout.PLATE_GCODE, gcode_bytes)
                zf.writestr(layout.checksum_entry_for(layout.PLATE_GCODE),
                            layout.compute_checksum_bytes(gcode_bytes))
                for name in layout.THUMBNAIL_NAMES:
                    zf.writestr(name, png)
            data = buffer.getvalue()
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            logger.error(f"Failed to build 3MF: {str(e)}")
            raise ThreeMFBuildError(f"3MF creation failed: {str(e)}") from e

        self.validate_3mf(data)
        logger.info(f"3MF created successfully ({len(data) / 1024:.1f} KB)")
        return data

    def create_content_types_xml(self) -> str:
        root = ET.Element("Types", xmlns=layout.CONTENT_TYPES_NS)
        ET.SubElement(root, "Default", Extension="rels",
                      ContentType="application/vnd.openxmlformats-package.relationships+xml")
        ET.SubElement(root, "Default", Extension="model",
                      ContentType="application/vnd.ms-package.3dmanufacturing-3dmodel+xml")
        ET.SubElement(root, "Default", Extension="png", ContentType="image/png")
        ET.SubElement(root, "Default", Extension="gcode", ContentType="text/x.gcode")
        return _xml(root)

    def create_relationships_xml(self) -> str:
        root = ET.Element("Relationships", xmlns=layout.RELATIONSHIPS_NS)
        ET.SubElement(root, "Relationship", Target=f"/{layout.MODEL}", Id="rel-1",
                      Type=layout.MODEL_REL_TYPE)
        ET.SubElement(root, "Relationship", Target=f"/{layout.THUMBNAIL_PLATE}", Id="rel-2",
                      Type=layout.THUMBNAIL_REL_TYPE)
        return _xml(root)

    def create_model_xml(self, title: str) -> str:
        """3D/3dmodel.model stub: metadata only, empty resources and build."""
        root = ET.Element("model", xmlns=self.NAMESPACE, unit="millimeter")
        created = self.clock().strftime("%Y-%m-%d")
        for name, value in (
            ("Application", APPLICATION),
            ("Title", title),
            ("Designer", APPLICATION),
            ("CreationDate", created),
            ("ModificationDate", created),
            ("Thumbnail_Middle", f"/{layout.THUMBNAIL_PLATE}"),
            ("Thumbnail_Small", f"/{layout.THUMBNAIL_SMALL}"),
        ):
            meta = ET.SubElement(root, "metadata", name=name)
            meta.text = value
        ET.SubElement(root, "resources")
        ET.SubElement(root, "build")
        return _xml(root)

    def create_model_settings_xml(self, plate_name: str) -> str:
        root = ET.Element("config")
        plate = ET.SubElement(root, "plate")
        for key, value in (
            ("plater_id", "1"),
            ("plater_name", plate_name),
            ("locked", "false"),
            ("gcode_file", layout.PLATE_GCODE),
            ("thumbnail_file", layout.THUMBNAIL_PLATE),
            ("thumbnail_no_light_file", layout.THUMBNAIL_NO_LIGHT),
            ("top_file", layout.THUMBNAIL_TOP),
            ("pick_file", layout.THUMBNAIL_PICK),
        ):
            ET.SubElement(plate, "metadata", key=key, value=value)
        return _xml(root)

    def create_model_settings_rels_xml(self) -> str:
        root = ET.Element("Relationships", xmlns=layout.RELATIONSHIPS_NS)
        ET.SubElement(root, "Relationship", Target=f"/{layout.PLATE_GCODE}", Id="rel-1",
                      Type=layout.GCODE_REL_TYPE)
        return _xml(root)

    def create_project_settings_config(self, jobs: Sequence[PlateJob], printer: PrinterProfile) -> str:
        """Metadata/project_settings.config (JSON, string values as Bambu Studio writes them)."""
        filaments = combine_filaments(jobs)
        bed = printer.printable_bed
        config = {
            "from": "project",
            "printer_model": printer.display_name,
            "printer_settings_id": f"{printer.display_name} {printer.nozzle_diameter:g} nozzle",
            "printable_area": [
                "0x0",
                f"{_fmt_number(bed.width)}x0",
                f"{_fmt_number(bed.width)}x{_fmt_number(bed.length)}",
                f"0x{_fmt_number(bed.length)}",
            ],
            "printable_height": _fmt_number(bed.height),
            "nozzle_diameter": [_fmt_number(printer.nozzle_diameter)],
            "filament_colour": [color for _, color, _ in filaments],
            "filament_type": [kind.value for kind, _, _ in filaments],
            "max_nozzle_temperature": _fmt_number(printer.max_nozzle_temp),
            "max_bed_temperature": _fmt_number(printer.max_bed_temp),
        }
        logger.debug(f"Generated project settings with {len(config)} keys")
        return json.dumps(config, indent=4)

    def create_slice_info_xml(self, jobs: Sequence[PlateJob], printer: PrinterProfile) -> str:
        root = ET.Element("config")
        header = ET.SubElement(root, "header")
        ET.SubElement(header, "header_item", key="X-BBL-Client-Type", value="slicer")
        ET.SubElement(header, "header_item", key="X-BBL-Client-Version", value=CLIENT_VERSION)

        prediction = int(sum(job.print_time.total_seconds() for job in jobs))
        weight = sum(job.total_weight_grams for job in jobs)

        plate = ET.SubElement(root, "plate")
        for key, value in (
            ("index", "1"),
            ("printer_model_id", printer.model_id),
            ("nozzle_diameters", _fmt_number(printer.nozzle_diameter)),
            ("prediction", str(prediction)),
            ("weight", f"{weight:.2f}"),
            ("outside", "false"),
            ("support_used", "false"),
        ):
            ET.SubElement(plate, "metadata", key=key, value=value)

        for index, (kind, color, grams) in enumerate(combine_filaments(jobs), start=1):
            ET.SubElement(plate, "filament", id=str(index), type=kind.value, color=color,
                          used_m="0", used_g=f"{grams:.2f}")
        return _xml(root)

    def validate_3mf(self, data: bytes) -> bool:
        """Validate package structure after creation.

        Raises:
            ThreeMFBuildError: If validation fails
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
                names = zf.namelist()
                for required in layout.REQUIRED_ENTRIES:
                    if required not in names:
                        raise ThreeMFBuildError(f"Missing required file: {required}")

                root = ET.fromstring(zf.read(layout.MODEL))
                if self.NAMESPACE not in root.tag:
                    raise ThreeMFBuildError("Invalid 3MF namespace")

                gcode = zf.read(layout.PLATE_GCODE)
                checksum = zf.read(layout.checksum_entry_for(layout.PLATE_GCODE)).decode("ascii")
                if checksum != layout.compute_checksum_bytes(gcode):
                    raise ThreeMFBuildError("G-code checksum mismatch")

                logger.debug("3MF validation passed")
                return True

        except zipfile.BadZipFile as e:
            raise ThreeMFBuildError("Invalid ZIP archive") from e
        except ET.ParseError as e:
            raise ThreeMFBuildError(f"Invalid XML: {str(e)}") from e

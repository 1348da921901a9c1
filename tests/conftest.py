"""Shared fixtures: sample slicer G-code, in-memory 3MF packages, registry."""

import base64
import io
import json
import zipfile
from datetime import datetime, timezone

import pytest
from PIL import Image

from config import A1_MINI_PROFILE, A1_PROFILE, PRINT_FINISHED_MARKER, default_registry
from gcode_parser import GCodeParser
from plate_job import PlateJob

FIXED_NOW = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)


def png_bytes(color=(255, 0, 0), size=(4, 4)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def build_gcode(
    print_time="1h 23m 45s",
    colors="#FF0000",
    weights="12.34",
    kinds="PLA",
    costs="0.25",
    printer_model="Bambu Lab A1 mini",
    thumbnail=None,
    body=None,
    finish_marker=True,
) -> str:
    """Plate G-code the way Bambu Studio lays out its header."""
    lines = [
        "; HEADER_BLOCK_START",
        "; generated by BambuStudio 01.09.00.00",
    ]
    if print_time is not None:
        lines.append(f"; model printing time: {print_time}; total estimated time: 1h 30m 0s")
    lines.append("; HEADER_BLOCK_END")
    if thumbnail:
        lines.append("; thumbnail begin 4x4 100")
        for i in range(0, len(thumbnail), 60):
            lines.append(f"; {thumbnail[i:i + 60]}")
        lines.append("; thumbnail end")
    if weights is not None:
        lines.append(f"; filament used [g] = {weights}")
    if costs is not None:
        lines.append(f"; filament cost = {costs}")
    if colors is not None:
        lines.append(f"; filament_colour = {colors}")
    if kinds is not None:
        lines.append(f"; filament_type = {kinds}")
    if printer_model is not None:
        lines.append(f"; printer_model = {printer_model}")

    if body is None:
        body = [
            "M140 S60",
            "M104 S220",
            "G28",
            "G1 Z0.3 F600",
            "G1 X10 Y10 E1.2 F1500",
            "G1 X20 Y20 E0.5",
        ]
    lines.extend(body)
    if finish_marker:
        lines.append(PRINT_FINISHED_MARKER)
    lines.append("M400")
    return "\n".join(lines) + "\n"


def build_3mf(entries: dict, compression=zipfile.ZIP_DEFLATED) -> bytes:
    """Zip ``{name: str | bytes}`` into an in-memory package, in the given order."""
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w", compression) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return out.getvalue()


def corrupt_entry(data: bytes, name: str) -> bytes:
    """Overwrite an entry's compressed payload so inflating it fails."""
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        info = zf.getinfo(name)
    buf = bytearray(data)
    offset = info.header_offset
    name_len = int.from_bytes(buf[offset + 26:offset + 28], "little")
    extra_len = int.from_bytes(buf[offset + 28:offset + 30], "little")
    start = offset + 30 + name_len + extra_len
    # 0xFF opens a final deflate block of the reserved type 3.
    buf[start:start + info.compress_size] = b"\xff" * info.compress_size
    return bytes(buf)


def bambu_3mf(plates=None, project_printer="Bambu Lab A1 mini", with_thumbnails=True) -> bytes:
    """A sliced package with one entry per plate: ``{plate_name: gcode_text}``."""
    plates = plates or {"Benchy": build_gcode()}
    model_settings = ["<?xml version=\"1.0\" encoding=\"UTF-8\"?>", "<config>"]
    entries = {
        "[Content_Types].xml": "<?xml version=\"1.0\"?><Types/>",
        "_rels/.rels": "<?xml version=\"1.0\"?><Relationships/>",
        "3D/3dmodel.model": (
            "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
            "<model xmlns=\"http://schemas.microsoft.com/3dmanufacturing/core/2015/02\">"
            "<metadata name=\"Application\">BambuStudio-01.09.00.00</metadata>"
            "<resources/><build/></model>"
        ),
    }
    if project_printer is not None:
        entries["Metadata/project_settings.config"] = json.dumps({"printer_model": project_printer})

    for index, (name, gcode) in enumerate(plates.items(), start=1):
        gcode_entry = f"Metadata/plate_{index}.gcode"
        model_settings.extend([
            "  <plate>",
            f"    <metadata key=\"plater_id\" value=\"{index}\"/>",
            f"    <metadata key=\"plater_name\" value=\"{name}\"/>",
            f"    <metadata key=\"gcode_file\" value=\"{gcode_entry}\"/>",
            "  </plate>",
        ])
        entries[gcode_entry] = gcode
        entries[gcode_entry + ".md5"] = "0" * 32
        if with_thumbnails:
            entries[f"Metadata/plate_{index}.png"] = png_bytes((0, 0, 255))
    model_settings.append("</config>")
    entries["Metadata/model_settings.config"] = "\n".join(model_settings)
    return build_3mf(entries)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def a1_mini():
    return A1_MINI_PROFILE


@pytest.fixture
def a1():
    return A1_PROFILE


@pytest.fixture
def swapmod(registry):
    return registry.get_routine("A1 Mini - SwapMod")


@pytest.fixture
def parser(registry):
    return GCodeParser(registry)


@pytest.fixture
def thumbnail_b64():
    return base64.b64encode(png_bytes()).decode("ascii")


@pytest.fixture
def make_job(parser, a1_mini):
    """Factory: a standalone job parsed from sample G-code."""

    def _make(name="Plate", routine=None, printer=None, **gcode_kwargs):
        content = build_gcode(**gcode_kwargs)
        metadata = parser.parse(content, f"{name}.gcode").metadata
        return PlateJob(
            plate_name=metadata.plate_name,
            filaments=tuple(metadata.filaments),
            gcode=metadata.gcode,
            printer=printer or a1_mini,
            routine=routine,
            print_time=metadata.print_time,
            thumbnail=metadata.thumbnail,
        )

    return _make

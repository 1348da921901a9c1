"""Tests for job extraction from sliced 3MF packages."""

import base64
import json

import pytest

from archive_extractor import ThreeMFExtractor
from config import PrinterModel
from diagnostics import Severity
from tests.conftest import bambu_3mf, build_3mf, build_gcode, corrupt_entry, png_bytes


@pytest.fixture
def extractor(parser, registry):
    return ThreeMFExtractor(parser, registry)


def messages(result, severity):
    return [d.message for d in result.diagnostics if d.severity is severity]


def test_extracts_every_plate(extractor):
    data = bambu_3mf({"Benchy": build_gcode(), "Cube": build_gcode(print_time="0h 10m 0s")})
    result = extractor.extract_jobs(data)

    assert result.is_success
    assert [job.plate_name for job in result.jobs] == ["Benchy", "Cube"]
    assert [job.source_entry for job in result.jobs] == ["Metadata/plate_1.gcode", "Metadata/plate_2.gcode"]
    for job in result.jobs:
        assert job.source_archive == data
        assert job.printer.model is PrinterModel.A1M
        assert job.routine.name == "A1 Mini - SwapMod"


def test_thumbnail_entry_preferred_over_inline(extractor, thumbnail_b64):
    data = bambu_3mf({"Benchy": build_gcode(thumbnail=thumbnail_b64)})
    job = extractor.extract_jobs(data).jobs[0]
    assert base64.b64decode(job.thumbnail) == png_bytes((0, 0, 255))


def test_inline_thumbnail_used_without_entry(extractor, thumbnail_b64):
    data = bambu_3mf({"Benchy": build_gcode(thumbnail=thumbnail_b64)}, with_thumbnails=False)
    assert extractor.extract_jobs(data).jobs[0].thumbnail == thumbnail_b64


def test_no_gcode_entries(extractor):
    result = extractor.extract_jobs(build_3mf({"3D/3dmodel.model": "<model/>"}))
    assert result.jobs == []
    assert messages(result, Severity.ERROR) == ["No G-code files found in 3MF archive"]


def test_corrupt_archive(extractor):
    result = extractor.extract_jobs(b"PK\x03\x04 this is not really a zip")
    assert result.jobs == []
    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].severity is Severity.ERROR
    assert not result.is_success


def test_invalid_entry_skipped_siblings_kept(extractor):
    data = bambu_3mf({"Good": build_gcode(), "Bad": "G28\nG1 X10\n"})
    result = extractor.extract_jobs(data)

    assert [job.plate_name for job in result.jobs] == ["Good"]
    assert "Skipping job 'plate_2' due to parse errors" in messages(result, Severity.WARNING)
    assert result.has_errors
    assert not result.is_success


def test_all_entries_invalid(extractor):
    result = extractor.extract_jobs(bambu_3mf({"Bad": "G28\n"}))
    assert result.jobs == []
    assert "No valid jobs could be extracted from 3MF file" in messages(result, Severity.ERROR)


def test_parser_diagnostics_are_prefixed(extractor):
    data = bambu_3mf({"Benchy": build_gcode(weights="abc", costs=None)})
    result = extractor.extract_jobs(data)
    assert any(d.message.startswith("[plate_1] ") and d.layer == "extractor" for d in result.diagnostics)


def test_printer_from_project_settings_wins(extractor):
    data = bambu_3mf({"Benchy": build_gcode(printer_model="Bambu Lab A1 mini")}, project_printer="Bambu Lab A1")
    job = extractor.extract_jobs(data).jobs[0]
    assert job.printer.model is PrinterModel.A1


def test_printer_from_model_metadata():
    gcode = build_gcode(printer_model=None)
    data = build_3mf({
        "3D/3dmodel.model": (
            "<model xmlns=\"http://schemas.microsoft.com/3dmanufacturing/core/2015/02\">"
            "<metadata name=\"BambuStudio:PrinterModel\">Bambu Lab A1</metadata></model>"
        ),
        "Metadata/plate_1.gcode": gcode,
    })
    result = ThreeMFExtractor().extract_jobs(data)
    assert result.jobs[0].printer.model is PrinterModel.A1


def test_printer_from_gcode_header(extractor):
    data = bambu_3mf({"Benchy": build_gcode(printer_model="Bambu Lab A1")}, project_printer=None)
    job = extractor.extract_jobs(data).jobs[0]
    assert job.printer.model is PrinterModel.A1
    assert job.routine is None


def test_printer_falls_back_to_default(extractor):
    data = bambu_3mf({"Benchy": build_gcode(printer_model=None)}, project_printer=None)
    result = extractor.extract_jobs(data)
    assert result.jobs[0].printer.model is PrinterModel.A1M
    assert any("defaulting to" in m for m in messages(result, Severity.INFO))


def test_printer_resolved_once_per_container(extractor):
    data = bambu_3mf({"A": build_gcode(), "B": build_gcode()}, project_printer="Bambu Lab A1")
    result = extractor.extract_jobs(data)
    assert {job.printer.model for job in result.jobs} == {PrinterModel.A1}
    no_routine = [m for m in messages(result, Severity.INFO) if "No plate change routine" in m]
    assert len(no_routine) == 1


def test_unreadable_project_settings_ignored(extractor):
    data = build_3mf({
        "Metadata/project_settings.config": "{broken",
        "Metadata/plate_1.gcode": build_gcode(printer_model="Bambu Lab A1"),
    })
    assert extractor.extract_jobs(data).jobs[0].printer.model is PrinterModel.A1


def test_plate_name_falls_back_to_entry_name(extractor):
    data = build_3mf({
        "Metadata/project_settings.config": json.dumps({"printer_model": "Bambu Lab A1 mini"}),
        "Metadata/plate_3.gcode": build_gcode(),
    })
    assert extractor.extract_jobs(data).jobs[0].plate_name == "plate_3"


def test_bom_is_tolerated(extractor):
    data = build_3mf({"Metadata/plate_1.gcode": "\ufeff" + build_gcode()})
    result = extractor.extract_jobs(data)
    assert result.jobs[0].gcode.lines[0] == "; HEADER_BLOCK_START"


def test_extract_from_path(extractor, tmp_path):
    path = tmp_path / "benchy.gcode.3mf"
    path.write_bytes(bambu_3mf())
    assert len(extractor.extract_from_path(path).jobs) == 1
    assert extractor.extract_from_path(tmp_path / "missing.3mf").has_errors


def test_header_check_failure_tagged_extractor(extractor):
    result = extractor.extract_jobs(bambu_3mf({"Bad": "G28\n"}))
    missing = [d for d in result.errors if "Required G-code header markers" in d.message]
    assert [d.layer for d in missing] == ["extractor"]


def test_damaged_project_settings_falls_back_to_header(extractor):
    data = bambu_3mf({"A": build_gcode(), "B": build_gcode()}, project_printer="Bambu Lab A1")
    result = extractor.extract_jobs(corrupt_entry(data, "Metadata/project_settings.config"))

    assert [job.plate_name for job in result.jobs] == ["A", "B"]
    assert {job.printer.model for job in result.jobs} == {PrinterModel.A1M}


def test_damaged_model_document_is_skipped(extractor):
    data = bambu_3mf({"A": build_gcode(), "B": build_gcode()}, project_printer=None)
    result = extractor.extract_jobs(corrupt_entry(data, "3D/3dmodel.model"))
    assert len(result.jobs) == 2
    assert result.jobs[0].printer.model is PrinterModel.A1M


def test_damaged_model_settings_uses_entry_names(extractor):
    data = bambu_3mf({"A": build_gcode(), "B": build_gcode()})
    result = extractor.extract_jobs(corrupt_entry(data, "Metadata/model_settings.config"))
    assert [job.plate_name for job in result.jobs] == ["plate_1", "plate_2"]
    assert result.is_success


def test_damaged_thumbnail_keeps_job(extractor, thumbnail_b64):
    data = bambu_3mf({"A": build_gcode(thumbnail=thumbnail_b64), "B": build_gcode()})
    result = extractor.extract_jobs(corrupt_entry(data, "Metadata/plate_1.png"))

    assert [job.plate_name for job in result.jobs] == ["A", "B"]
    assert result.jobs[0].thumbnail == thumbnail_b64
    assert not result.has_errors


def test_damaged_gcode_entry_does_not_stop_siblings(extractor):
    data = bambu_3mf({"A": build_gcode(), "B": build_gcode()}, project_printer=None)
    result = extractor.extract_jobs(corrupt_entry(data, "Metadata/plate_1.gcode"))

    assert [job.plate_name for job in result.jobs] == ["B"]
    assert any("Metadata/plate_1.gcode" in e.message for e in result.errors)

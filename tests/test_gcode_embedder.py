"""Tests for cloning a source package around a new program."""

import asyncio
import io
import zipfile

import pytest

import archive_layout as layout
from gcode_embedder import GCodeEmbedder, GCodeEmbedError, entry_names, verify_checksum
from packager import PackageMode, package_jobs, resolve_mode
from archive_extractor import ThreeMFExtractor
from tests.conftest import bambu_3mf, build_3mf, build_gcode

NEW_GCODE = "; PLATECHAIN: Total Jobs: 2\nG28\nG1 X1 Y1 E1\n"


@pytest.fixture
def embedder():
    return GCodeEmbedder()


@pytest.fixture
def source():
    return bambu_3mf({"Benchy": build_gcode(), "Cube": build_gcode()})


def infos(data):
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        return {info.filename: info for info in zf.infolist()}


def contents(data):
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        return {name: zf.read(name) for name in zf.namelist()}


def test_other_entries_copied_bit_for_bit(embedder, source):
    out = embedder.embed(source, NEW_GCODE)
    before, after = contents(source), contents(out)

    assert entry_names(out) == entry_names(source)
    for name, data in before.items():
        if name in (layout.PLATE_GCODE, layout.PLATE_GCODE + ".md5"):
            continue
        assert after[name] == data
    assert after[layout.PLATE_GCODE] == NEW_GCODE.encode("utf-8")


def test_checksum_matches_new_gcode(embedder, source):
    out = embedder.embed(source, NEW_GCODE)
    assert verify_checksum(out)
    assert contents(out)[layout.PLATE_GCODE + ".md5"] == layout.compute_checksum(NEW_GCODE).encode("ascii")


def test_compression_and_timestamps_preserved(embedder):
    source = build_3mf({
        layout.MODEL: "<model/>",
        layout.PLATE_GCODE: "G28\n",
        layout.PLATE_GCODE + ".md5": "0" * 32,
    }, compression=zipfile.ZIP_STORED)
    out = embedder.embed(source, NEW_GCODE)

    before, after = infos(source), infos(out)
    for name, info in before.items():
        assert after[name].compress_type == info.compress_type == zipfile.ZIP_STORED
        assert after[name].date_time == info.date_time


def test_missing_checksum_inserted_after_gcode(embedder):
    source = build_3mf({layout.MODEL: "<model/>", layout.PLATE_GCODE: "G28\n", "Metadata/plate_1.png": b"png"})
    out = embedder.embed(source, NEW_GCODE)
    assert entry_names(out) == [
        layout.MODEL, layout.PLATE_GCODE, layout.PLATE_GCODE + ".md5", "Metadata/plate_1.png",
    ]
    assert verify_checksum(out)


def test_missing_gcode_appended(embedder):
    out = embedder.embed(build_3mf({layout.MODEL: "<model/>"}), NEW_GCODE)
    assert entry_names(out) == [layout.MODEL, layout.PLATE_GCODE, layout.PLATE_GCODE + ".md5"]
    assert verify_checksum(out)


def test_target_entry_other_than_first_plate(embedder, source):
    out = embedder.embed(source, NEW_GCODE, "Metadata/plate_2.gcode")
    after = contents(out)
    assert after["Metadata/plate_2.gcode"] == NEW_GCODE.encode("utf-8")
    assert after[layout.PLATE_GCODE] == contents(source)[layout.PLATE_GCODE]
    assert verify_checksum(out, "Metadata/plate_2.gcode")


@pytest.mark.parametrize("source", [None, b""])
def test_no_source_raises(embedder, source):
    with pytest.raises(GCodeEmbedError, match="No source 3MF"):
        embedder.embed(source, NEW_GCODE)


def test_corrupt_source_raises(embedder):
    with pytest.raises(GCodeEmbedError):
        embedder.embed(b"not a zip at all", NEW_GCODE)


def test_embed_jobs_uses_first_job_source(embedder, source):
    jobs = ThreeMFExtractor().extract_jobs(source).jobs
    out = embedder.embed_jobs(NEW_GCODE, list(reversed(jobs)))
    assert contents(out)["Metadata/plate_2.gcode"] == NEW_GCODE.encode("utf-8")


def test_embed_jobs_without_jobs(embedder):
    with pytest.raises(GCodeEmbedError):
        embedder.embed_jobs(NEW_GCODE, [])


def test_embed_async(embedder, source):
    out = asyncio.run(embedder.embed_async(source, NEW_GCODE))
    assert verify_checksum(out)


def test_resolve_mode(make_job, source):
    archived = ThreeMFExtractor().extract_jobs(source).jobs
    standalone = [make_job("A")]

    assert resolve_mode(archived) is PackageMode.CLONE
    assert resolve_mode(standalone) is PackageMode.BUILD
    assert resolve_mode([]) is PackageMode.BUILD
    assert resolve_mode(archived, PackageMode.BUILD) is PackageMode.BUILD


def test_package_jobs_clone_without_source_fails(make_job, a1_mini):
    with pytest.raises(GCodeEmbedError):
        package_jobs(NEW_GCODE, [make_job("A")], a1_mini, PackageMode.CLONE)


def test_package_jobs_build(make_job, a1_mini):
    out = package_jobs(NEW_GCODE, [make_job("A")], a1_mini)
    assert layout.SLICE_INFO in entry_names(out)
    assert verify_checksum(out)

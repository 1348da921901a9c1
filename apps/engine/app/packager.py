"""Pick a repackaging mode and turn a compiled program into package bytes."""

import logging
from enum import Enum
from typing import Optional, Sequence

from builder_3mf import ThreeMFBuilder
from config import PrinterProfile
from gcode_embedder import GCodeEmbedder
from plate_job import PlateJob

logger = logging.getLogger(__name__)


class PackageMode(Enum):
    AUTO = "auto"  # clone when the first job came from a 3MF, else build
    CLONE = "clone"
    BUILD = "build"


def resolve_mode(jobs: Sequence[PlateJob], mode: PackageMode = PackageMode.AUTO) -> PackageMode:
    if mode is not PackageMode.AUTO:
        return mode
    if jobs and jobs[0].from_archive:
        return PackageMode.CLONE
    return PackageMode.BUILD


def package_jobs(
    compiled: str,
    jobs: Sequence[PlateJob],
    printer: PrinterProfile,
    mode: PackageMode = PackageMode.AUTO,
    builder: Optional[ThreeMFBuilder] = None,
    embedder: Optional[GCodeEmbedder] = None,
) -> bytes:
    """Package ``compiled`` for ``jobs``.

    Raises:
        GCodeEmbedError: CLONE requested (or chosen) without a usable source package
        ThreeMFBuildError: BUILD failed
    """
    selected = resolve_mode(jobs, mode)
    logger.info(f"Packaging {len(jobs)} job(s) using {selected.value} mode")

    if selected is PackageMode.CLONE:
        return (embedder or GCodeEmbedder()).embed_jobs(compiled, jobs)
    return (builder or ThreeMFBuilder()).build(compiled, jobs, printer)

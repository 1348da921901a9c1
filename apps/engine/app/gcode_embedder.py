"""Clone a source .gcode.3mf and splice in a compiled program.

Every entry of the source package is copied through unchanged, in its
original order with its original name, timestamp and compression method.
Only the plate G-code and its MD5 side-car are rewritten.
"""

import asyncio
import io
import logging
import zipfile
from typing import List, Optional, Sequence

import archive_layout as layout
from plate_job import PlateJob

logger = logging.getLogger(__name__)


class GCodeEmbedError(Exception):
    """Raised when splicing G-code into a source package fails."""
    pass


def _clone_info(item: zipfile.ZipInfo, filename: Optional[str] = None) -> zipfile.ZipInfo:
    """Fresh ZipInfo carrying over name, timestamp, compression and attributes."""
    info = zipfile.ZipInfo(filename or item.filename, date_time=item.date_time)
    info.compress_type = item.compress_type
    info.external_attr = item.external_attr
    info.create_system = item.create_system
    info.comment = item.comment
    return info


class GCodeEmbedder:
    """Replace the G-code payload of an existing package."""

    def embed(self, source: Optional[bytes], gcode: str, target_entry: Optional[str] = None) -> bytes:
        """Copy ``source`` and replace ``target_entry`` plus its checksum.

        Args:
            source: Original package bytes
            gcode: Compiled program text
            target_entry: G-code entry to replace; defaults to Metadata/plate_1.gcode

        Returns:
            New package bytes

        Raises:
            GCodeEmbedError: If there is no source package or it cannot be read
        """
        if not source:
            raise GCodeEmbedError("No source 3MF available: the first job did not come from a 3MF file")

        target = target_entry or layout.PLATE_GCODE
        checksum_name = layout.checksum_entry_for(target)
        gcode_bytes = gcode.encode("utf-8")
        checksum_bytes = layout.compute_checksum_bytes(gcode_bytes).encode("ascii")

        try:
            buffer = io.BytesIO()
            with zipfile.ZipFile(io.BytesIO(source), "r") as source_zf:
                items = source_zf.infolist()
                names = {item.filename for item in items}
                logger.info(f"Splicing G-code into {target} ({len(items)} source entries)")

                with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as dest_zf:
                    for item in items:
                        if item.filename == target:
                            dest_zf.writestr(_clone_info(item), gcode_bytes)
                            if checksum_name not in names:
                                dest_zf.writestr(_clone_info(item, checksum_name), checksum_bytes)
                                logger.debug(f"Added missing checksum entry {checksum_name}")
                            continue
                        if item.filename == checksum_name:
                            dest_zf.writestr(_clone_info(item), checksum_bytes)
                            continue

                        # Copy as-is
                        dest_zf.writestr(item, source_zf.read(item.filename))

                    if target not in names:
                        logger.warning(f"{target} not found in source 3MF, appending it")
                        dest_zf.writestr(target, gcode_bytes)
                        if checksum_name not in names:
                            dest_zf.writestr(checksum_name, checksum_bytes)

        except (zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError, RuntimeError, OSError) as e:
            logger.error(f"Failed to splice G-code: {str(e)}")
            raise GCodeEmbedError(f"G-code embedding failed: {str(e)}") from e

        data = buffer.getvalue()
        logger.info(f"Spliced package created ({len(data) / 1024:.1f} KB)")
        return data

    def embed_jobs(self, gcode: str, jobs: Sequence[PlateJob]) -> bytes:
        """Clone the first job's source package."""
        if not jobs:
            raise GCodeEmbedError("Cannot embed G-code: no jobs provided")
        first = jobs[0]
        return self.embed(first.source_archive, gcode, first.source_entry)

    async def embed_async(self, source: Optional[bytes], gcode: str, target_entry: Optional[str] = None) -> bytes:
        """Async version of embed; runs in a worker thread."""
        return await asyncio.to_thread(self.embed, source, gcode, target_entry)


def entry_names(data: bytes) -> List[str]:
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        return zf.namelist()


def verify_checksum(data: bytes, gcode_entry: str = layout.PLATE_GCODE) -> bool:
    """True when the side-car matches the MD5 of the G-code entry's bytes."""
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        gcode = zf.read(gcode_entry)
        stored = zf.read(layout.checksum_entry_for(gcode_entry)).decode("ascii").strip()
    return stored.lower() == layout.compute_checksum_bytes(gcode)

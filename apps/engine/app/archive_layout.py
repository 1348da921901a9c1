"""Entry names and XML namespaces of a Bambu-style .gcode.3mf package."""

import hashlib

CONTENT_TYPES = "[Content_Types].xml"
PACKAGE_RELS = "_rels/.rels"
MODEL = "3D/3dmodel.model"
MODEL_SETTINGS = "Metadata/model_settings.config"
MODEL_SETTINGS_RELS = "Metadata/_rels/model_settings.config.rels"
PROJECT_SETTINGS = "Metadata/project_settings.config"
SLICE_INFO = "Metadata/slice_info.config"

PLATE_GCODE = "Metadata/plate_1.gcode"
CHECKSUM_SUFFIX = ".md5"

THUMBNAIL_PLATE = "Metadata/plate_1.png"
THUMBNAIL_SMALL = "Metadata/plate_1_small.png"
THUMBNAIL_NO_LIGHT = "Metadata/plate_no_light_1.png"
THUMBNAIL_TOP = "Metadata/top_1.png"
THUMBNAIL_PICK = "Metadata/pick_1.png"
THUMBNAIL_NAMES = (
    THUMBNAIL_PLATE,
    THUMBNAIL_SMALL,
    THUMBNAIL_NO_LIGHT,
    THUMBNAIL_TOP,
    THUMBNAIL_PICK,
)

REQUIRED_ENTRIES = (CONTENT_TYPES, PACKAGE_RELS, MODEL, PLATE_GCODE, PLATE_GCODE + CHECKSUM_SUFFIX)

CORE_NS = "http://schemas.microsoft.com/3dmanufacturing/core/2015/02"
CONTENT_TYPES_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
RELATIONSHIPS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
MODEL_REL_TYPE = "http://schemas.microsoft.com/3dmanufacturing/2013/01/3dmodel"
THUMBNAIL_REL_TYPE = "http://schemas.openxmlformats.org/package/2006/relationships/metadata/thumbnail"
GCODE_REL_TYPE = "http://schemas.bambulab.com/package/2021/gcode"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


def checksum_entry_for(gcode_entry: str) -> str:
    return gcode_entry + CHECKSUM_SUFFIX


def thumbnail_entry_for(gcode_entry: str) -> str:
    """Metadata/plate_2.gcode -> Metadata/plate_2.png"""
    base, _, _ = gcode_entry.rpartition(".")
    return f"{base or gcode_entry}.png"


def compute_checksum(text: str) -> str:
    """MD5 of the UTF-8 bytes, lower-case hex."""
    return compute_checksum_bytes(text.encode("utf-8"))


def compute_checksum_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()

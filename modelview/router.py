"""Format router: picks a decoder from a file name and its first bytes."""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Optional

from modelview.assets import basename


class DecoderId(Enum):
    GLTF = "gltf"
    OBJ = "obj"
    STL = "stl"
    PLY = "ply"
    FBX = "fbx"
    THREE_MF = "3mf"
    DAE = "dae"
    VRML = "vrml"
    TDS = "3ds"
    X3D = "x3d"
    GCODE = "gcode"
    UNSUPPORTED = "unsupported"


GCODE_EXTENSIONS = ("gcode", "gco", "nc", "acode", "gx", "g", "g3drem", "makerbot", "thing")

EXTENSION_TABLE = {
    "glb": DecoderId.GLTF,
    "gltf": DecoderId.GLTF,
    "obj": DecoderId.OBJ,
    "stl": DecoderId.STL,
    "ply": DecoderId.PLY,
    "fbx": DecoderId.FBX,
    "3mf": DecoderId.THREE_MF,
    "3ds": DecoderId.TDS,
    "dae": DecoderId.DAE,
    "x3d": DecoderId.X3D,
    "vrml": DecoderId.VRML,
    "wrl": DecoderId.VRML,
}
EXTENSION_TABLE.update({ext: DecoderId.GCODE for ext in GCODE_EXTENSIONS})

GLB_MAGIC = 0x46546C67  # "glTF" little-endian
FBX_BINARY_MAGIC = b"Kaydara FBX Binary"
GCODE_WORD_RE = re.compile(rb"^\s*[GM]\d+(\s|;|$)", re.IGNORECASE | re.MULTILINE)
OBJ_LINE_RE = re.compile(rb"^\s*(v|vn|vt|f)\s+-?\d", re.MULTILINE)


def extension_of(filename: str) -> str:
    base = basename(filename or "")
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].lower()


def supported_extensions():
    return sorted(EXTENSION_TABLE)


def is_supported_extension(extension: str) -> bool:
    return extension.lower().lstrip(".") in EXTENSION_TABLE


def route(filename: str, first_bytes: bytes = b"") -> DecoderId:
    """Decoder for the file. The extension wins; magic bytes are the fallback. Never raises."""
    decoder = EXTENSION_TABLE.get(extension_of(filename))
    if decoder is not None:
        return decoder
    sniffed = sniff(first_bytes or b"")
    return sniffed if sniffed is not None else DecoderId.UNSUPPORTED


def sniff(head: bytes) -> Optional[DecoderId]:
    """Guess the format from leading bytes alone."""
    if len(head) >= 4 and int.from_bytes(head[:4], "little") == GLB_MAGIC:
        return DecoderId.GLTF
    if head.startswith(FBX_BINARY_MAGIC):
        return DecoderId.FBX
    if head.startswith(b"PK\x03\x04"):
        return DecoderId.THREE_MF
    if head.startswith(b"GCOD"):
        return DecoderId.GCODE
    if len(head) >= 6 and head[:2] == b"\x4d\x4d" and int.from_bytes(head[2:6], "little") >= 6:
        return DecoderId.TDS

    text = head.lstrip(b"\xef\xbb\xbf \t\r\n")
    lowered = text[:512].lower()
    if lowered.startswith(b"; fbx"):
        return DecoderId.FBX
    if lowered.startswith(b"#vrml"):
        return DecoderId.VRML
    if lowered.startswith(b"ply"):
        return DecoderId.PLY
    if lowered.startswith(b"<?xml") or lowered.startswith(b"<"):
        if b"<collada" in lowered:
            return DecoderId.DAE
        if b"<x3d" in lowered:
            return DecoderId.X3D
    if text.startswith(b"{") and _looks_like_gltf_json(text):
        return DecoderId.GLTF
    if lowered.startswith(b"solid"):
        return DecoderId.STL
    if GCODE_WORD_RE.search(text[:4096]):
        return DecoderId.GCODE
    if OBJ_LINE_RE.search(text[:4096]):
        return DecoderId.OBJ
    return None


def _looks_like_gltf_json(text: bytes) -> bool:
    try:
        document = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        # Only the head may have been supplied
        return b'"asset"' in text[:4096]
    return isinstance(document, dict) and "asset" in document


def container_kind(extension: str, first_bytes: bytes) -> str:
    """Container flavour for the glTF decoder: "glb" or "gltf". Extension first, magic second."""
    extension = extension.lower().lstrip(".")
    if extension in ("glb", "gltf"):
        return extension
    if len(first_bytes) >= 4 and int.from_bytes(first_bytes[:4], "little") == GLB_MAGIC:
        return "glb"
    return "gltf"

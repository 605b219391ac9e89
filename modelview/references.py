"""Reference-directive scanners.

Used by decoders while parsing and by discovery collaborators that need to
know which sibling files to fetch before a decode starts.
"""

from __future__ import annotations

import re
from typing import Dict, List

from modelview.assets import basename

_MTLLIB_RE = re.compile(r"^[ \t]*mtllib[ \t]+(.*?)[ \t]*$", re.MULTILINE)
_MAP_RE = re.compile(r"^[ \t]*(map_[A-Za-z0-9_]+|bump|disp|decal|refl)[ \t]+(.*?)[ \t]*$", re.MULTILINE)
_NUMBER_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")


def _unique(names) -> List[str]:
    seen = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen


def parse_obj_material_files(obj_text: str) -> List[str]:
    """Material library names from `mtllib` lines, in order, without duplicates."""
    return _unique(match.group(1).strip() for match in _MTLLIB_RE.finditer(obj_text))


def strip_map_options(value: str) -> str:
    """Drop leading `-o 1 1 1` style options from a texture map statement."""
    tokens = value.split()
    i = 0
    while i < len(tokens) and tokens[i].startswith("-") and not _NUMBER_RE.match(tokens[i]):
        i += 1
        while i < len(tokens) - 1 and (_NUMBER_RE.match(tokens[i]) or tokens[i] in ("on", "off")):
            i += 1
    return " ".join(tokens[i:])


def texture_basename(value: str) -> str:
    return basename(strip_map_options(value).strip().strip('"'))


def parse_mtl_texture_files(mtl_text: str) -> List[str]:
    """Texture basenames referenced by `map_*` statements (directories dropped)."""
    return _unique(texture_basename(match.group(2)) for match in _MAP_RE.finditer(mtl_text))


def parse_gltf_dependencies(gltf: dict) -> Dict[str, List[str]]:
    """External buffer and image URIs of a glTF document; inline data: URIs skipped."""
    dependencies = {"buffers": [], "images": []}
    for buffer in gltf.get("buffers", []):
        uri = buffer.get("uri")
        if uri and not uri.startswith("data:"):
            dependencies["buffers"].append(uri)
    for image in gltf.get("images", []):
        uri = image.get("uri")
        if uri and not uri.startswith("data:"):
            dependencies["images"].append(uri)
    return dependencies

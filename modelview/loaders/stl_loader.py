# modelview/loaders/stl_loader.py
"""STL decoder (binary and ASCII). Z-up source convention."""

from __future__ import annotations

import struct

import numpy as np

from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind
from modelview.loaders.base import BaseDecoder
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode

BINARY_HEADER_SIZE = 84
TRIANGLE_RECORD = np.dtype([
    ("normal", "<f4", (3,)),
    ("vertices", "<f4", (3, 3)),
    ("attribute", "<u2"),
])


def is_binary_stl(data: bytes) -> bool:
    """Binary when the triangle count matches the byte size exactly."""
    if len(data) < BINARY_HEADER_SIZE:
        return False
    count = struct.unpack_from("<I", data, 80)[0]
    if BINARY_HEADER_SIZE + count * TRIANGLE_RECORD.itemsize == len(data):
        return True
    # ASCII STL starts with "solid" and typically has no nulls in first line
    head = data[:80]
    return not (head.strip().lower().startswith(b"solid") and b"\x00" not in head)


def load_binary_stl(data: bytes, name: str) -> MeshData:
    """Load binary STL format."""
    count = struct.unpack_from("<I", data, 80)[0]
    available = (len(data) - BINARY_HEADER_SIZE) // TRIANGLE_RECORD.itemsize
    if available < count:
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT,
                          f"Binary STL declares {count} triangles but holds {available}")
    records = np.frombuffer(data, dtype=TRIANGLE_RECORD, count=count, offset=BINARY_HEADER_SIZE)

    vertices = records["vertices"].reshape(-1, 3).astype(np.float32)
    normals = np.repeat(records["normal"], 3, axis=0).astype(np.float32)

    return MeshData(
        name=name,
        vertices=vertices,
        normals=normals,
        indices=np.arange(len(vertices), dtype=np.uint32),
        material_index=0,
    )


def load_ascii_stl(data: bytes, name: str) -> MeshData:
    """Load ASCII STL format."""
    vertices = []
    normals = []
    current_normal = (0.0, 0.0, 0.0)

    for raw in data.decode("utf-8", errors="ignore").splitlines():
        line = raw.strip()
        lower = line.lower()

        if lower.startswith("facet normal"):
            parts = line.split()
            if len(parts) >= 5:
                current_normal = (float(parts[2]), float(parts[3]), float(parts[4]))

        elif lower.startswith("vertex"):
            parts = line.split()
            if len(parts) >= 4:
                vertices.append((float(parts[1]), float(parts[2]), float(parts[3])))
                normals.append(current_normal)

    # Drop a dangling partial facet
    usable = len(vertices) - len(vertices) % 3
    vertices_np = np.array(vertices[:usable], dtype=np.float32).reshape(-1, 3)
    normals_np = np.array(normals[:usable], dtype=np.float32).reshape(-1, 3)

    return MeshData(
        name=name,
        vertices=vertices_np,
        normals=normals_np,
        indices=np.arange(len(vertices_np), dtype=np.uint32),
        material_index=0,
    )


class STLDecoder(BaseDecoder):
    name = "stl"
    decoder_id = DecoderId.STL

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        stem = context.primary_asset.basename.rsplit(".", 1)[0] or "STL"
        if is_binary_stl(data):
            mesh = load_binary_stl(data, stem)
        else:
            mesh = load_ascii_stl(data, stem)

        parsed = ParsedScene(SceneNode(stem, meshes=[mesh]))
        parsed.add_material(MaterialData("STL"))
        parsed.up_axis = "Z"
        return parsed

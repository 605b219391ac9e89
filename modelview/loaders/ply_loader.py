# modelview/loaders/ply_loader.py
"""PLY decoder: ascii, binary_little_endian and binary_big_endian."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import numpy as np

from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind
from modelview.loaders.base import BaseDecoder
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode

PLY_TYPES = {
    "char": "i1", "int8": "i1",
    "uchar": "u1", "uint8": "u1",
    "short": "i2", "int16": "i2",
    "ushort": "u2", "uint16": "u2",
    "int": "i4", "int32": "i4",
    "uint": "u4", "uint32": "u4",
    "float": "f4", "float32": "f4",
    "double": "f8", "float64": "f8",
}


class PLYProperty:
    def __init__(self, name: str, dtype: str, count_dtype: Optional[str] = None):
        self.name = name
        self.dtype = dtype
        self.count_dtype = count_dtype  # set for list properties

    @property
    def is_list(self) -> bool:
        return self.count_dtype is not None


class PLYElement:
    def __init__(self, name: str, count: int):
        self.name = name
        self.count = count
        self.properties: List[PLYProperty] = []


def parse_header(data: bytes) -> Tuple[str, List[PLYElement], int]:
    """Returns (format, elements, body offset)."""
    end = data.find(b"end_header")
    if not data.startswith(b"ply") or end < 0:
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Missing PLY header")
    newline = data.find(b"\n", end)
    body_offset = len(data) if newline < 0 else newline + 1

    fmt = None
    elements: List[PLYElement] = []
    for raw in data[:end].decode("ascii", errors="ignore").splitlines():
        parts = raw.split()
        if not parts:
            continue
        if parts[0] == "format":
            fmt = parts[1]
        elif parts[0] == "element":
            elements.append(PLYElement(parts[1], int(parts[2])))
        elif parts[0] == "property" and elements:
            if parts[1] == "list":
                elements[-1].properties.append(PLYProperty(parts[4], PLY_TYPES[parts[3]], PLY_TYPES[parts[2]]))
            else:
                elements[-1].properties.append(PLYProperty(parts[2], PLY_TYPES[parts[1]]))

    if fmt not in ("ascii", "binary_little_endian", "binary_big_endian"):
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Unknown PLY format {fmt!r}")
    return fmt, elements, body_offset


def _read_ascii(body: bytes, elements: List[PLYElement]) -> Dict[str, Dict[str, list]]:
    tokens = body.decode("ascii", errors="ignore").split()
    pos = 0
    out: Dict[str, Dict[str, list]] = {}
    for element in elements:
        columns: Dict[str, list] = {p.name: [] for p in element.properties}
        for _ in range(element.count):
            for prop in element.properties:
                if prop.is_list:
                    n = int(tokens[pos])
                    columns[prop.name].append([float(t) for t in tokens[pos + 1:pos + 1 + n]])
                    pos += 1 + n
                else:
                    columns[prop.name].append(float(tokens[pos]))
                    pos += 1
        out[element.name] = columns
    return out


def _read_binary(body: bytes, elements: List[PLYElement], endian: str) -> Dict[str, Dict[str, list]]:
    out: Dict[str, Dict[str, list]] = {}
    offset = 0
    for element in elements:
        if not any(p.is_list for p in element.properties):
            # Fixed-size records read in one go
            dtype = np.dtype([(p.name, endian + p.dtype) for p in element.properties])
            records = np.frombuffer(body, dtype=dtype, count=element.count, offset=offset)
            offset += dtype.itemsize * element.count
            out[element.name] = {p.name: records[p.name] for p in element.properties}
            continue

        columns: Dict[str, list] = {p.name: [] for p in element.properties}
        for _ in range(element.count):
            for prop in element.properties:
                if prop.is_list:
                    count_type = np.dtype(endian + prop.count_dtype)
                    n = int(np.frombuffer(body, dtype=count_type, count=1, offset=offset)[0])
                    offset += count_type.itemsize
                    item_type = np.dtype(endian + prop.dtype)
                    columns[prop.name].append(np.frombuffer(body, dtype=item_type, count=n, offset=offset))
                    offset += item_type.itemsize * n
                else:
                    item_type = np.dtype(endian + prop.dtype)
                    columns[prop.name].append(np.frombuffer(body, dtype=item_type, count=1, offset=offset)[0])
                    offset += item_type.itemsize
        out[element.name] = columns
    return out


def _column(columns: Dict[str, list], *names: str) -> Optional[np.ndarray]:
    for name in names:
        if name in columns:
            return np.asarray(columns[name], dtype=np.float64)
    return None


def load_ply(data: bytes, name: str) -> MeshData:
    fmt, elements, body_offset = parse_header(data)
    body = data[body_offset:]
    if fmt == "ascii":
        tables = _read_ascii(body, elements)
    else:
        tables = _read_binary(body, elements, "<" if fmt == "binary_little_endian" else ">")

    vertex = tables.get("vertex")
    if not vertex or "x" not in vertex:
        raise DecodeError(ErrorKind.NO_GEOMETRY_FOUND, "PLY has no vertex element")

    positions = np.stack([_column(vertex, "x"), _column(vertex, "y"), _column(vertex, "z")], axis=1)

    normals = None
    if "nx" in vertex:
        normals = np.stack([_column(vertex, "nx"), _column(vertex, "ny"), _column(vertex, "nz")], axis=1).astype(np.float32)

    uvs = None
    u = _column(vertex, "u", "s", "texture_u")
    v = _column(vertex, "v", "t", "texture_v")
    if u is not None and v is not None:
        uvs = np.stack([u, v], axis=1).astype(np.float32)

    colors = None
    red = _column(vertex, "red", "r", "diffuse_red")
    if red is not None:
        green = _column(vertex, "green", "g", "diffuse_green")
        blue = _column(vertex, "blue", "b", "diffuse_blue")
        colors = np.stack([red, green, blue], axis=1)
        if colors.max(initial=0.0) > 1.0:
            colors = colors / 255.0
        colors = colors.astype(np.float32)

    faces = tables.get("face", {})
    face_lists = faces.get("vertex_indices", faces.get("vertex_index"))
    triangles = []
    for face in face_lists or []:
        face = [int(i) for i in face]
        for i in range(1, len(face) - 1):
            triangles.extend((face[0], face[i], face[i + 1]))

    if triangles:
        return MeshData(name, positions, indices=np.array(triangles, dtype=np.uint32),
                        normals=normals, uvs=uvs, colors=colors)
    # Point cloud
    return MeshData(name, positions, normals=normals, uvs=uvs, colors=colors, primitive="points")


class PLYDecoder(BaseDecoder):
    name = "ply"
    decoder_id = DecoderId.PLY

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        stem = context.primary_asset.basename.rsplit(".", 1)[0] or "PLY"
        mesh = load_ply(data, stem)
        if mesh.indices is not None and len(mesh.indices) and int(mesh.indices.max()) >= len(mesh.vertices):
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "PLY face index out of range")
        mesh.material_index = 0
        parsed = ParsedScene(SceneNode(stem, meshes=[mesh]))
        parsed.add_material(MaterialData("PLY"))
        return parsed

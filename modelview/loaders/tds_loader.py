# modelview/loaders/tds_loader.py
"""Autodesk 3DS decoder. Z-up source convention.

A 3DS file is a tree of chunks: uint16 id, uint32 length (header included).
Only the editor section is read; keyframer data is skipped. Trimesh vertices
are stored in world space, so object nodes carry no transform.
"""

from __future__ import annotations

import struct
from typing import Iterator, List, Optional, Tuple

import numpy as np

from modelview import log
from modelview.assets import DecodeContext, basename
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.resolver import ResourceKind
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode, TextureData

MAIN = 0x4D4D
VERSION = 0x0002
EDITOR = 0x3D3D
OBJECT = 0x4000
TRIMESH = 0x4100
VERTICES = 0x4110
FACES = 0x4120
FACE_MATERIAL = 0x4130
UVS = 0x4140
MATERIAL = 0xAFFF
MATERIAL_NAME = 0xA000
DIFFUSE = 0xA020
TRANSPARENCY = 0xA050
TEXTURE_MAP = 0xA200
MAP_FILENAME = 0xA300
COLOR_FLOAT = 0x0010
COLOR_24 = 0x0011
LIN_COLOR_24 = 0x0012
LIN_COLOR_FLOAT = 0x0013
PERCENT_INT = 0x0030
PERCENT_FLOAT = 0x0031

HEADER = struct.Struct("<HI")


def iter_chunks(data: bytes, start: int, end: int) -> Iterator[Tuple[int, int, int]]:
    """(chunk id, payload start, chunk end) for each chunk in data[start:end]."""
    pos = start
    while pos + HEADER.size <= end:
        chunk_id, length = HEADER.unpack_from(data, pos)
        if length < HEADER.size or pos + length > end:
            raise ValueError(f"Chunk 0x{chunk_id:04X} at offset {pos} overruns its parent")
        yield chunk_id, pos + HEADER.size, pos + length
        pos += length


def read_cstring(data: bytes, pos: int, end: int) -> Tuple[str, int]:
    """Null-terminated string and the offset after the terminator."""
    terminator = data.find(b"\x00", pos, end)
    if terminator < 0:
        raise ValueError(f"Unterminated string at offset {pos}")
    return data[pos:terminator].decode("latin-1"), terminator + 1


def read_color(data: bytes, start: int, end: int) -> Optional[np.ndarray]:
    for chunk_id, payload, _ in iter_chunks(data, start, end):
        if chunk_id in (COLOR_FLOAT, LIN_COLOR_FLOAT):
            return np.array(struct.unpack_from("<3f", data, payload), dtype=np.float32)
        if chunk_id in (COLOR_24, LIN_COLOR_24):
            return np.array(struct.unpack_from("<3B", data, payload), dtype=np.float32) / 255.0
    return None


def read_percent(data: bytes, start: int, end: int) -> Optional[float]:
    for chunk_id, payload, _ in iter_chunks(data, start, end):
        if chunk_id == PERCENT_INT:
            return float(struct.unpack_from("<H", data, payload)[0])
        if chunk_id == PERCENT_FLOAT:
            return float(struct.unpack_from("<f", data, payload)[0])
    return None


class TDSMaterial:
    def __init__(self):
        self.name = ""
        self.diffuse: Optional[np.ndarray] = None
        self.transparency = 0.0
        self.texture: Optional[str] = None


def read_material(data: bytes, start: int, end: int) -> TDSMaterial:
    material = TDSMaterial()
    for chunk_id, payload, chunk_end in iter_chunks(data, start, end):
        if chunk_id == MATERIAL_NAME:
            material.name = read_cstring(data, payload, chunk_end)[0]
        elif chunk_id == DIFFUSE:
            material.diffuse = read_color(data, payload, chunk_end)
        elif chunk_id == TRANSPARENCY:
            material.transparency = read_percent(data, payload, chunk_end) or 0.0
        elif chunk_id == TEXTURE_MAP:
            for sub_id, sub_payload, sub_end in iter_chunks(data, payload, chunk_end):
                if sub_id == MAP_FILENAME:
                    material.texture = read_cstring(data, sub_payload, sub_end)[0]
    return material


class TDSMesh:
    def __init__(self, name: str):
        self.name = name
        self.vertices = np.zeros((0, 3), dtype=np.float32)
        self.faces = np.zeros((0, 3), dtype=np.uint32)
        self.uvs: Optional[np.ndarray] = None
        # material name -> face indices
        self.face_materials: List[Tuple[str, np.ndarray]] = []


def read_trimesh(data: bytes, start: int, end: int, name: str) -> TDSMesh:
    mesh = TDSMesh(name)
    for chunk_id, payload, chunk_end in iter_chunks(data, start, end):
        if chunk_id == VERTICES:
            count = struct.unpack_from("<H", data, payload)[0]
            mesh.vertices = np.frombuffer(data, dtype="<f4", count=count * 3, offset=payload + 2).reshape(-1, 3)
        elif chunk_id == FACES:
            count = struct.unpack_from("<H", data, payload)[0]
            records = np.frombuffer(data, dtype="<u2", count=count * 4, offset=payload + 2).reshape(-1, 4)
            mesh.faces = records[:, :3].astype(np.uint32)
            # Face chunk carries sub-chunks after the face records
            for sub_id, sub_payload, sub_end in iter_chunks(data, payload + 2 + count * 8, chunk_end):
                if sub_id == FACE_MATERIAL:
                    material_name, pos = read_cstring(data, sub_payload, sub_end)
                    face_count = struct.unpack_from("<H", data, pos)[0]
                    faces = np.frombuffer(data, dtype="<u2", count=face_count, offset=pos + 2).astype(np.int64)
                    mesh.face_materials.append((material_name, faces))
        elif chunk_id == UVS:
            count = struct.unpack_from("<H", data, payload)[0]
            mesh.uvs = np.frombuffer(data, dtype="<f4", count=count * 2, offset=payload + 2).reshape(-1, 2)
    return mesh


def read_editor(data: bytes, start: int, end: int) -> Tuple[List[TDSMesh], List[TDSMaterial]]:
    meshes, materials = [], []
    for chunk_id, payload, chunk_end in iter_chunks(data, start, end):
        if chunk_id == MATERIAL:
            materials.append(read_material(data, payload, chunk_end))
        elif chunk_id == OBJECT:
            name, pos = read_cstring(data, payload, chunk_end)
            for sub_id, sub_payload, sub_end in iter_chunks(data, pos, chunk_end):
                if sub_id == TRIMESH:
                    meshes.append(read_trimesh(data, sub_payload, sub_end, name))
    return meshes, materials


def split_by_material(mesh: TDSMesh) -> List[Tuple[Optional[str], np.ndarray]]:
    """Face index groups per material; unassigned faces form a group with no material."""
    groups = []
    assigned = np.zeros(len(mesh.faces), dtype=bool)
    for material_name, faces in mesh.face_materials:
        faces = faces[faces < len(mesh.faces)]
        if len(faces):
            groups.append((material_name, faces))
            assigned[faces] = True
    rest = np.flatnonzero(~assigned)
    if len(rest):
        groups.append((None, rest))
    return groups


class TDSDecoder(BaseDecoder):
    name = "3ds"
    decoder_id = DecoderId.TDS

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        if len(data) < HEADER.size or HEADER.unpack_from(data, 0)[0] != MAIN:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Missing 3DS main chunk",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])
        # Some exporters write a main chunk length past the end of the file
        main_end = min(HEADER.unpack_from(data, 0)[1], len(data))

        meshes: List[TDSMesh] = []
        materials: List[TDSMaterial] = []
        for chunk_id, payload, chunk_end in iter_chunks(data, HEADER.size, main_end):
            if chunk_id == VERSION:
                log.debug(f"3DS version {struct.unpack_from('<I', data, payload)[0]}")
            elif chunk_id == EDITOR:
                meshes, materials = read_editor(data, payload, chunk_end)

        parsed = ParsedScene(SceneNode(context.primary_asset.basename or "3DS"))
        parsed.up_axis = "Z"
        slots = {}
        for material in materials:
            slots[material.name] = parsed.add_material(await self._material(material, context))

        default_slot = None
        for mesh in meshes:
            if not len(mesh.faces):
                continue
            if int(mesh.faces.max()) >= len(mesh.vertices):
                raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Face index out of range in {mesh.name!r}")
            uvs = mesh.uvs if mesh.uvs is not None and len(mesh.uvs) == len(mesh.vertices) else None
            node = parsed.root.add_child(SceneNode(mesh.name))
            for material_name, faces in split_by_material(mesh):
                slot = slots.get(material_name)
                if slot is None:
                    if default_slot is None:
                        default_slot = parsed.add_material(MaterialData("Default"))
                    slot = default_slot
                node.meshes.append(MeshData(
                    f"{mesh.name}_{material_name}" if material_name else mesh.name,
                    mesh.vertices.copy(),
                    indices=mesh.faces[faces].reshape(-1),
                    uvs=uvs,
                    material_index=slot,
                ))
        return parsed

    async def _material(self, tds: TDSMaterial, context: DecodeContext) -> MaterialData:
        material = MaterialData(tds.name or "Material")
        if tds.diffuse is not None:
            material.base_color[:3] = tds.diffuse
        if tds.transparency > 0.0:
            material.explicit_transparency = True
            material.opacity = 1.0 - tds.transparency / 100.0
        if tds.texture:
            name = basename(tds.texture)
            material.texture_name = name
            resolved = await self.load_dependency(context, name, ResourceKind.TEXTURE)
            if resolved.found:
                material.texture = TextureData.from_bytes(name, resolved.blob)
        return material

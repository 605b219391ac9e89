# modelview/loaders/obj_loader.py
"""OBJ decoder with MTL material libraries. No external dependencies beyond numpy."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import numpy as np

from modelview import log
from modelview.assets import DecodeContext
from modelview.loaders.base import BaseDecoder
from modelview.references import parse_obj_material_files, texture_basename
from modelview.resolver import ResourceKind
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode, TextureData


class OBJGroup:
    """Faces sharing one object/group name and one material."""

    def __init__(self, name: str, material: Optional[str]):
        self.name = name
        self.material = material
        self.faces: List[Tuple[int, Optional[int], Optional[int]]] = []  # triangle corners
        self.lines: List[int] = []  # segment endpoints


class MTLMaterial:
    def __init__(self, name: str):
        self.name = name
        self.diffuse: Optional[Tuple[float, float, float]] = None
        self.dissolve: Optional[float] = None
        self.diffuse_map: Optional[str] = None


def _index(token: str, count: int) -> int:
    """OBJ indices are 1-based; negative values count back from the end."""
    value = int(token)
    return value - 1 if value > 0 else count + value


def parse_mtl(text: str) -> Dict[str, MTLMaterial]:
    """Parse an MTL library into materials keyed by name."""
    materials: Dict[str, MTLMaterial] = {}
    current: Optional[MTLMaterial] = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        key = parts[0].lower()
        value = parts[1].strip() if len(parts) > 1 else ""

        if key == "newmtl":
            current = MTLMaterial(value or f"Material_{len(materials)}")
            materials[current.name] = current
        elif current is None:
            continue
        elif key == "kd":
            numbers = value.split()
            if len(numbers) >= 3:
                current.diffuse = (float(numbers[0]), float(numbers[1]), float(numbers[2]))
        elif key == "d" and value:
            current.dissolve = float(value.split()[-1])
        elif key == "tr" and value and current.dissolve is None:
            current.dissolve = 1.0 - float(value.split()[-1])
        elif key == "map_kd" and value:
            current.diffuse_map = texture_basename(value)

    return materials


def parse_obj(text: str, default_name: str):
    """Returns (positions, colors, uvs, normals, groups)."""
    positions = []  # v
    colors = []  # optional trailing rgb on v
    tex_coords = []  # vt
    normals_raw = []  # vn

    object_name = default_name
    material: Optional[str] = None
    groups: List[OBJGroup] = []
    current = OBJGroup(object_name, material)

    def switch(name: str, mat: Optional[str]) -> OBJGroup:
        nonlocal current
        if current.faces or current.lines:
            groups.append(current)
        current = OBJGroup(name, mat)
        return current

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split()
        cmd = parts[0]

        if cmd == "v" and len(parts) >= 4:
            positions.append((float(parts[1]), float(parts[2]), float(parts[3])))
            if len(parts) >= 7:
                colors.append((float(parts[4]), float(parts[5]), float(parts[6])))

        elif cmd == "vt" and len(parts) >= 3:
            tex_coords.append((float(parts[1]), float(parts[2])))

        elif cmd == "vn" and len(parts) >= 4:
            normals_raw.append((float(parts[1]), float(parts[2]), float(parts[3])))

        elif cmd in ("o", "g"):
            object_name = " ".join(parts[1:]) or default_name
            switch(object_name, material)

        elif cmd == "usemtl":
            material = " ".join(parts[1:]) or None
            switch(object_name, material)

        elif cmd == "f" and len(parts) >= 4:
            # Format: v, v/vt, v/vt/vn, v//vn
            face_verts = []
            for vert in parts[1:]:
                indices_str = vert.split("/")
                v_idx = _index(indices_str[0], len(positions))
                vt_idx = None
                if len(indices_str) > 1 and indices_str[1]:
                    vt_idx = _index(indices_str[1], len(tex_coords))
                vn_idx = None
                if len(indices_str) > 2 and indices_str[2]:
                    vn_idx = _index(indices_str[2], len(normals_raw))
                face_verts.append((v_idx, vt_idx, vn_idx))

            # Fan triangulation for convex polygons
            for i in range(1, len(face_verts) - 1):
                current.faces.extend((face_verts[0], face_verts[i], face_verts[i + 1]))

        elif cmd == "l" and len(parts) >= 3:
            points = [_index(p.split("/")[0], len(positions)) for p in parts[1:]]
            for a, b in zip(points, points[1:]):
                current.lines.extend((a, b))

    if current.faces or current.lines:
        groups.append(current)
    return positions, colors, tex_coords, normals_raw, groups


def _build_meshes(group: OBJGroup, positions, colors, tex_coords, normals_raw) -> List[MeshData]:
    meshes = []
    positions_np = np.array(positions, dtype=np.float32).reshape(-1, 3)
    colors_np = np.array(colors, dtype=np.float32) if len(colors) == len(positions) and colors else None

    if group.faces:
        v_idx = np.array([c[0] for c in group.faces], dtype=np.int64)
        if v_idx.min() < 0 or v_idx.max() >= len(positions_np):
            raise IndexError(f"Face index out of range in {group.name!r}")

        uvs = None
        if tex_coords and all(c[1] is not None for c in group.faces):
            uvs = np.array(tex_coords, dtype=np.float32)[[c[1] for c in group.faces]]
        normals = None
        if normals_raw and all(c[2] is not None for c in group.faces):
            normals = np.array(normals_raw, dtype=np.float32)[[c[2] for c in group.faces]]

        meshes.append(MeshData(
            name=group.name,
            vertices=positions_np[v_idx],
            normals=normals,
            uvs=uvs,
            colors=colors_np[v_idx] if colors_np is not None else None,
            indices=np.arange(len(v_idx), dtype=np.uint32),
        ))

    if group.lines:
        l_idx = np.array(group.lines, dtype=np.int64)
        meshes.append(MeshData(
            name=f"{group.name}_lines",
            vertices=positions_np[l_idx],
            indices=np.arange(len(l_idx), dtype=np.uint32),
            primitive="lines",
        ))
    return meshes


class OBJDecoder(BaseDecoder):
    name = "obj"
    decoder_id = DecoderId.OBJ

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        text = data.decode("utf-8", errors="ignore")
        stem = context.primary_asset.basename.rsplit(".", 1)[0] or "OBJ"
        positions, colors, tex_coords, normals_raw, groups = parse_obj(text, stem)

        parsed = ParsedScene(SceneNode(stem))
        library = await self._load_libraries(text, context)
        material_slots: Dict[Optional[str], int] = {}

        for group in groups:
            if group.material not in material_slots:
                material_slots[group.material] = parsed.add_material(
                    await self._material(group.material, library, context))
            node = parsed.root.add_child(SceneNode(group.name))
            for mesh in _build_meshes(group, positions, colors, tex_coords, normals_raw):
                mesh.material_index = material_slots[group.material]
                node.meshes.append(mesh)

        return parsed

    async def _load_libraries(self, text: str, context: DecodeContext) -> Dict[str, MTLMaterial]:
        library: Dict[str, MTLMaterial] = {}
        for mtl_name in parse_obj_material_files(text):
            resolved = await self.load_dependency(context, mtl_name, ResourceKind.MATERIAL)
            if not resolved.found:
                log.warn(f"Material library {mtl_name!r} not supplied; using default materials")
                continue
            library.update(parse_mtl(resolved.blob.decode("utf-8", errors="ignore")))
        return library

    async def _material(self, name: Optional[str], library: Dict[str, MTLMaterial],
                        context: DecodeContext) -> MaterialData:
        material = MaterialData(name or "Default")
        mtl = library.get(name) if name else None
        if mtl is None:
            return material

        if mtl.diffuse is not None:
            material.base_color[:3] = mtl.diffuse
        if mtl.dissolve is not None and mtl.dissolve < 1.0:
            material.explicit_transparency = True
            material.opacity = mtl.dissolve
        if mtl.diffuse_map:
            material.texture_name = mtl.diffuse_map
            resolved = await self.load_dependency(context, mtl.diffuse_map, ResourceKind.TEXTURE)
            if resolved.found:
                material.texture = TextureData.from_bytes(mtl.diffuse_map, resolved.blob)
        return material

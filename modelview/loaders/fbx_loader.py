# modelview/loaders/fbx_loader.py
"""FBX decoder using the ufbx library.

Legacy FBX 6.x files are patched before parsing: the version field is
rewritten to the nearest supported 7.x value. Files older than 6000 are
rejected outright.

ufbx notes:

1. SINGLE-PASS ITERATION ONLY
   Iterating the same collection twice, or scene.meshes before scene.nodes,
   can crash. Mesh data is extracted while walking nodes.

2. TRANSFORM IS TRS, NOT MATRIX
   node.local_transform has .translation, .rotation (quaternion), .scale.

3. UV DATA LOCATION
   mesh.uv_sets[0].vertex_uv.values and .indices

4. TEXTURE EXTRACTION
   Read textures while iterating materials (mat.pbr.base_color.texture).
   Embedded bytes live in tex.content with tex.content_size bytes.
"""

from __future__ import annotations

import asyncio
import os
import re
import struct
import tempfile
from typing import Dict, List, Optional, Tuple

import numpy as np
import ufbx

from modelview import log
from modelview.assets import DecodeContext, basename
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.resolver import ResourceKind
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode, TextureData, trs_matrix

FBX_BINARY_MAGIC = b"Kaydara FBX Binary  \x00"
VERSION_OFFSET = 23
SUPPORTED_VERSIONS = (7100, 7200, 7300, 7400, 7500, 7700)
LEGACY_MIN = 6000
LEGACY_MAX = 6999

ASCII_VERSION_RE = re.compile(rb"FBXVersion:\s*(\d+)")
ASCII_HEADER_RE = re.compile(rb"^;\s*FBX\s+(\d+)\.(\d+)\.(\d+)", re.MULTILINE)
VERSION_SIGNATURE_RE = re.compile(r"version|unsupported fbx|too old", re.IGNORECASE)

CONVERSION_HINTS = (RemediationHint.CONVERT_TO_GLTF, RemediationHint.REEXPORT_FBX_2013)


# ---------- VERSION HANDLING ----------

def is_binary_fbx(data: bytes) -> bool:
    return data.startswith(FBX_BINARY_MAGIC[:18])


def read_version(data: bytes) -> Optional[int]:
    """Binary: LE uint32 at a fixed offset. ASCII: FBXVersion token, else the comment header."""
    if is_binary_fbx(data):
        if len(data) < VERSION_OFFSET + 4:
            return None
        return struct.unpack_from("<I", data, VERSION_OFFSET)[0]
    head = data[:65536]
    match = ASCII_VERSION_RE.search(head)
    if match:
        return int(match.group(1))
    match = ASCII_HEADER_RE.search(head)
    if match:
        major, minor, patch = (int(g) for g in match.groups())
        return major * 1000 + minor * 100 + patch * 10
    return None


def nearest_supported(version: int) -> int:
    return min(SUPPORTED_VERSIONS, key=lambda v: (abs(v - version), v))


def patch_version(data: bytes, version: int) -> bytes:
    """Copy of data with the version field (and any ASCII `; FBX x.y.z` header) rewritten."""
    if is_binary_fbx(data):
        patched = bytearray(data)
        struct.pack_into("<I", patched, VERSION_OFFSET, version)
        return bytes(patched)
    data = ASCII_VERSION_RE.sub(b"FBXVersion: " + str(version).encode("ascii"), data, count=1)
    dotted = f"{version // 1000}.{version % 1000 // 100}.{version % 100 // 10}".encode("ascii")
    return ASCII_HEADER_RE.sub(lambda m: m.group(0)[:m.start(1) - m.start(0)] + dotted, data, count=1)


def classify_failure(message: str, patched: bool) -> ErrorKind:
    if VERSION_SIGNATURE_RE.search(message):
        return ErrorKind.VERSION_INCOMPATIBLE
    if patched:
        # Version field already fixed up: the content itself is incompatible
        return ErrorKind.STRUCTURAL_INCOMPATIBILITY
    return ErrorKind.EMPTY_OR_CORRUPT_INPUT


def load_fbx_scene(data: bytes):
    """Parse FBX bytes with ufbx. ufbx reads from a path, so the bytes go through a temp file."""
    fd, path = tempfile.mkstemp(suffix=".fbx")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        scene = ufbx.load_file(path)
    finally:
        os.unlink(path)
    if not scene:
        raise RuntimeError("ufbx returned no scene")
    return scene


# ---------- SCENE EXTRACTION ----------

def _triangulate(mesh) -> List[Tuple[int, int, int]]:
    """Fan triangulation over face corners (indices into mesh.vertex_indices)."""
    corners = []
    for face_idx in range(mesh.num_faces):
        face = mesh.faces[face_idx]
        begin = face.index_begin
        n = face.num_indices
        for j in range(1, n - 1):
            corners.append((begin, begin + j, begin + j + 1))
    return corners


def _extract_mesh(mesh, name: str) -> Optional[MeshData]:
    corners = _triangulate(mesh)
    if not corners:
        return None

    vertices = []
    normals = []
    uvs = []

    has_normals = mesh.vertex_normal.values and len(mesh.vertex_normal.values) > 0
    has_uvs = (mesh.uv_sets and len(mesh.uv_sets) > 0 and mesh.uv_sets[0].vertex_uv.values
               and len(mesh.uv_sets[0].vertex_uv.values) > 0)

    for tri in corners:
        for corner in tri:
            v = mesh.vertices[mesh.vertex_indices[corner]]
            vertices.append((v.x, v.y, v.z))

            if has_normals:
                n = mesh.vertex_normal.values[mesh.vertex_normal.indices[corner]]
                normals.append((n.x, n.y, n.z))

            if has_uvs:
                vertex_uv = mesh.uv_sets[0].vertex_uv
                uv = vertex_uv.values[vertex_uv.indices[corner]]
                uvs.append((uv.x, uv.y))

    vertices_np = np.array(vertices, dtype=np.float32)
    return MeshData(
        name=name,
        vertices=vertices_np,
        normals=np.array(normals, dtype=np.float32) if normals else None,
        uvs=np.array(uvs, dtype=np.float32) if uvs else None,
        indices=np.arange(len(vertices_np), dtype=np.uint32),
    )


def _node_transform(node) -> np.ndarray:
    t = node.local_transform
    return trs_matrix(
        (t.translation.x, t.translation.y, t.translation.z),
        (t.rotation.x, t.rotation.y, t.rotation.z, t.rotation.w),
        (t.scale.x, t.scale.y, t.scale.z),
    )


def extract_scene(scene) -> Tuple[SceneNode, Dict[int, str], List[dict]]:
    """
    Walk the node tree once.

    Returns (root, mesh id -> material name, material records). Meshes are
    shared between nodes instancing the same ufbx mesh.
    """
    root = SceneNode("Root")
    mesh_cache: Dict[str, Optional[MeshData]] = {}
    mesh_materials: Dict[int, str] = {}

    stack = [(scene.root_node, root)] if scene.root_node else []
    while stack:
        node, parent = stack.pop()
        out = parent.add_child(SceneNode(node.name or f"Node_{len(parent.children)}", _node_transform(node)))

        if node.mesh:
            # Wrapper objects are recreated per access, so meshes are keyed by name
            key = node.mesh.name or f"mesh_{len(mesh_cache)}"
            if key not in mesh_cache:
                mesh = node.mesh
                mesh_cache[key] = _extract_mesh(mesh, mesh.name or f"Mesh_{len(mesh_cache)}")
                if mesh_cache[key] is not None and mesh.materials and len(mesh.materials) > 0:
                    mesh_materials[id(mesh_cache[key])] = mesh.materials[0].name or "Material"
            if mesh_cache[key] is not None:
                out.meshes.append(mesh_cache[key])

        for i in reversed(range(len(node.children))):
            stack.append((node.children[i], out))

    # Materials and textures - extracted together
    materials = []
    for mat in scene.materials:
        record = {"name": mat.name or "Material", "color": None, "texture": None, "content": None}
        if mat.pbr.base_color.has_value:
            c = mat.pbr.base_color.value_vec4
            record["color"] = (c.x, c.y, c.z, c.w)
        tex = mat.pbr.base_color.texture
        if tex and tex.filename:
            record["texture"] = tex.filename
            if getattr(tex, "content", None) and getattr(tex, "content_size", 0) > 0:
                record["content"] = bytes(tex.content[:tex.content_size])
        materials.append(record)

    return root, mesh_materials, materials


# ---------- DECODER ----------

class FBXDecoder(BaseDecoder):
    name = "fbx"
    decoder_id = DecoderId.FBX

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        binary = is_binary_fbx(data)
        if not binary and not (ASCII_VERSION_RE.search(data[:65536]) or data.lstrip().startswith(b";")):
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Not an FBX file (no binary preamble or ASCII header)",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])

        version = read_version(data)
        patched = False
        if version is not None and version < LEGACY_MIN:
            raise DecodeError(
                ErrorKind.VERSION_INCOMPATIBLE,
                f"FBX version {version} is too old",
                hints=CONVERSION_HINTS,
                details={"version": version},
            )
        if version is not None and LEGACY_MIN <= version <= LEGACY_MAX:
            target = nearest_supported(version)
            log.info(f"Patching legacy FBX version {version} -> {target}")
            context.diagnostics.warn(f"Legacy FBX {version} parsed as {target}")
            patched_data = patch_version(data, target)
            patched = patched_data != data
            data = patched_data

        loop = asyncio.get_running_loop()
        try:
            scene = await loop.run_in_executor(None, load_fbx_scene, data)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            kind = classify_failure(message, patched)
            log.warn(e, "ufbx failed")
            hints = CONVERSION_HINTS if kind is not ErrorKind.EMPTY_OR_CORRUPT_INPUT else (RemediationHint.REEXPORT_FROM_SOURCE,)
            raise DecodeError(kind, f"FBX parse failed: {message}", hints=hints,
                              details={"version": version, "patched": patched}) from e

        root, mesh_materials, material_records = extract_scene(scene)
        parsed = ParsedScene(root)
        slots = {}
        for record in material_records:
            material = MaterialData(record["name"])
            if record["color"] is not None:
                material.base_color = np.array(record["color"], dtype=np.float32)
            if record["texture"]:
                material.texture = await self._texture(record, context)
                material.texture_name = basename(record["texture"])
            slots.setdefault(record["name"], parsed.add_material(material))

        default_slot = None
        for mesh in root.iter_meshes():
            slot = slots.get(mesh_materials.get(id(mesh)))
            if slot is None:
                if default_slot is None:
                    default_slot = parsed.add_material(MaterialData("Default"))
                slot = default_slot
            mesh.material_index = slot
        return parsed

    async def _texture(self, record: dict, context: DecodeContext) -> Optional[TextureData]:
        name = basename(record["texture"])
        if record["content"]:
            return TextureData.from_bytes(name, record["content"])
        resolved = await self.load_dependency(context, name, ResourceKind.TEXTURE)
        if not resolved.found:
            return None
        return TextureData.from_bytes(name, resolved.blob)

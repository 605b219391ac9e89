# modelview/loaders/threemf_loader.py
"""3MF decoder. Z-up source convention.

A 3MF file is an OPC ZIP package. The model part is found through
_rels/.rels (the StartPart relationship) or at the conventional
3D/3dmodel.model path. When reading fails, the archive listing is inspected
to report a precise cause.
"""

from __future__ import annotations

import io
import posixpath
import xml.etree.ElementTree as ET
import zipfile
from typing import Dict, List, Optional, Tuple

import numpy as np

from modelview import log
from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode

ZIP_SIGNATURE = b"PK"
MODEL_LOCATION = "3D/3dmodel.model"
RELS_LOCATION = "_rels/.rels"
START_PART_TYPE = "http://schemas.microsoft.com/3dmanufacturing/2013/01/3dmodel"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def parse_transformation(text: str) -> np.ndarray:
    """3MF 3x4 row-major transform string to a 4x4 column-vector matrix."""
    values = [float(v) for v in text.split()]
    if len(values) != 12:
        return np.eye(4)
    m = np.array(values, dtype=np.float64).reshape(4, 3)
    transform = np.eye(4)
    transform[:3, :3] = m[:3, :3].T
    transform[:3, 3] = m[3]
    return transform


def parse_color(text: str) -> np.ndarray:
    """#RRGGBB or #RRGGBBAA."""
    text = text.strip().lstrip("#")
    channels = [int(text[i:i + 2], 16) / 255.0 for i in range(0, min(len(text), 8), 2)]
    while len(channels) < 4:
        channels.append(1.0)
    return np.array(channels[:4], dtype=np.float32)


def find_model_path(archive: zipfile.ZipFile) -> Optional[str]:
    names = set(archive.namelist())
    if RELS_LOCATION in names:
        rels = ET.fromstring(archive.read(RELS_LOCATION))
        for rel in rels:
            if _local(rel.tag) != "Relationship":
                continue
            if rel.get("Type") == START_PART_TYPE:
                target = rel.get("Target", "").lstrip("/")
                if target in names:
                    return target
    if MODEL_LOCATION in names:
        return MODEL_LOCATION
    return None


# ---------- FAILURE CLASSIFICATION ----------

def classify_archive(data: bytes) -> DecodeError:
    """Second look at an archive that failed to decode."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
        names = archive.namelist()
    except (zipfile.BadZipFile, OSError, ValueError) as e:
        return DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Not a readable ZIP package: {e}",
                           hints=[RemediationHint.REEXPORT_FROM_SOURCE])

    models = [n for n in names if n.lower().endswith(".model")]
    if not models:
        return DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Package has no .model part",
                           hints=[RemediationHint.THREEMF_MISSING_MODEL],
                           details={"entries": names[:20]})
    parts = ([RELS_LOCATION] if RELS_LOCATION in names else []) + models
    for name in parts:
        try:
            ET.fromstring(archive.read(name))
        except ET.ParseError as e:
            return DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Malformed XML in {name}: {e}",
                               hints=[RemediationHint.THREEMF_MALFORMED_XML],
                               details={"part": name})
    if MODEL_LOCATION not in names and find_model_path(archive) is None:
        return DecodeError(ErrorKind.STRUCTURAL_INCOMPATIBILITY,
                           f"Model part at non-standard path {models[0]!r}",
                           hints=[RemediationHint.THREEMF_NONSTANDARD_PATH],
                           details={"models": models})
    return DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "3MF package could not be decoded",
                       hints=[RemediationHint.REEXPORT_FROM_SOURCE])


# ---------- MODEL READING ----------

class ThreeMFObject:
    def __init__(self, object_id: str, name: str):
        self.object_id = object_id
        self.name = name
        self.mesh: Optional[MeshData] = None
        self.components: List[Tuple[str, np.ndarray]] = []


def read_resources(model: ET.Element, parsed: ParsedScene) -> Dict[str, ThreeMFObject]:
    resources = _child(model, "resources")
    if resources is None:
        return {}

    # basematerials group id -> material slot per index
    base_materials: Dict[str, List[int]] = {}
    for group in _children(resources, "basematerials"):
        slots = []
        for base in _children(group, "base"):
            material = MaterialData(base.get("name", f"Material_{len(parsed.materials)}"))
            color = base.get("displaycolor")
            if color:
                material.base_color = parse_color(color)
            slots.append(parsed.add_material(material))
        base_materials[group.get("id", "")] = slots

    default_slot = None
    objects: Dict[str, ThreeMFObject] = {}
    for obj in _children(resources, "object"):
        object_id = obj.get("id", "")
        item = ThreeMFObject(object_id, obj.get("name", f"Object_{object_id}"))
        mesh_node = _child(obj, "mesh")
        if mesh_node is not None:
            item.mesh = read_mesh(mesh_node, item.name)
            slot = None
            pid, pindex = obj.get("pid"), obj.get("pindex", "0")
            if pid in base_materials and base_materials[pid]:
                slots = base_materials[pid]
                slot = slots[min(int(pindex), len(slots) - 1)]
            if slot is None:
                if default_slot is None:
                    default_slot = parsed.add_material(MaterialData("Default"))
                slot = default_slot
            item.mesh.material_index = slot

        components = _child(obj, "components")
        if components is not None:
            for component in _children(components, "component"):
                item.components.append((component.get("objectid", ""),
                                        parse_transformation(component.get("transform", ""))))
        objects[object_id] = item
    return objects


def read_mesh(mesh_node: ET.Element, name: str) -> MeshData:
    vertices_node = _child(mesh_node, "vertices")
    triangles_node = _child(mesh_node, "triangles")
    vertices = []
    if vertices_node is not None:
        for vertex in _children(vertices_node, "vertex"):
            vertices.append((float(vertex.get("x", 0)), float(vertex.get("y", 0)), float(vertex.get("z", 0))))
    indices = []
    if triangles_node is not None:
        for triangle in _children(triangles_node, "triangle"):
            indices.extend((int(triangle.get("v1")), int(triangle.get("v2")), int(triangle.get("v3"))))

    vertices_np = np.array(vertices, dtype=np.float32).reshape(-1, 3)
    indices_np = np.array(indices, dtype=np.uint32)
    if len(indices_np) and int(indices_np.max()) >= len(vertices_np):
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Triangle index out of range in {name!r}")
    return MeshData(name, vertices_np, indices=indices_np)


def instantiate(objects: Dict[str, ThreeMFObject], object_id: str, transform: np.ndarray,
                depth: int = 0) -> Optional[SceneNode]:
    item = objects.get(object_id)
    if item is None or depth > 32:
        log.warn(f"3MF: unknown or cyclic object reference {object_id!r}")
        return None
    node = SceneNode(item.name, transform)
    if item.mesh is not None:
        node.meshes.append(item.mesh)
    for child_id, child_transform in item.components:
        child = instantiate(objects, child_id, child_transform, depth + 1)
        if child is not None:
            node.children.append(child)
    return node


def load_3mf(data: bytes) -> ParsedScene:
    archive = zipfile.ZipFile(io.BytesIO(data))
    model_path = find_model_path(archive)
    if model_path is None:
        raise KeyError("No model part")
    model = ET.fromstring(archive.read(model_path))

    parsed = ParsedScene(SceneNode(posixpath.basename(model_path)))
    parsed.up_axis = "Z"
    unit = model.get("unit", "millimeter")
    objects = read_resources(model, parsed)

    build = _child(model, "build")
    items = _children(build, "item") if build is not None else []
    if not items:
        # No build section: show every top-level object
        referenced = {cid for obj in objects.values() for cid, _ in obj.components}
        items = [ET.Element("item", objectid=oid) for oid in objects if oid not in referenced]

    for item in items:
        node = instantiate(objects, item.get("objectid", ""), parse_transformation(item.get("transform", "")))
        if node is not None:
            parsed.root.children.append(node)
    log.debug(f"3MF model {model_path}: {len(objects)} objects, unit {unit}")
    return parsed


class ThreeMFDecoder(BaseDecoder):
    name = "3mf"
    decoder_id = DecoderId.THREE_MF

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        if data[:2] != ZIP_SIGNATURE:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Not a ZIP package (missing PK signature)",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])
        try:
            return load_3mf(data)
        except (zipfile.BadZipFile, ET.ParseError, KeyError, ValueError, OSError) as e:
            log.warn(e, "3MF decode failed, inspecting archive")
            raise classify_archive(data) from e

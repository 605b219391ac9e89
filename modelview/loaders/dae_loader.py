# modelview/loaders/dae_loader.py
"""Collada (DAE) decoder.

Reads geometry, the visual scene graph, common-profile effects and embedded
animations. Animation samplers are read straight from their sources into
clips. Z_UP and X_UP documents are rotated into the Y-up frame; a missing
<up_axis> means Y_UP.
"""

from __future__ import annotations

import math
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

import numpy as np

from modelview import log
from modelview.assets import DecodeContext, basename
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.resolver import ResourceKind
from modelview.router import DecoderId
from modelview.scene import (
    AnimationChannel,
    AnimationClip,
    MaterialData,
    MeshData,
    ParsedScene,
    SceneNode,
    TextureData,
    axis_angle_matrix,
)


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.rsplit("}", 1)[1]
    return root


def _floats(text: Optional[str]) -> np.ndarray:
    if not text:
        return np.zeros(0, dtype=np.float64)
    return np.array(text.split(), dtype=np.float64)


def _ints(text: Optional[str]) -> np.ndarray:
    if not text:
        return np.zeros(0, dtype=np.int64)
    return np.array(text.split(), dtype=np.int64)


def _ref(url: Optional[str]) -> str:
    return (url or "").lstrip("#")


def node_transform(node: ET.Element) -> np.ndarray:
    """Compose matrix/translate/rotate/scale children in document order."""
    transform = np.eye(4)
    for child in node:
        if child.tag == "matrix":
            values = _floats(child.text)
            if len(values) == 16:
                transform = transform @ values.reshape(4, 4)
        elif child.tag == "translate":
            values = _floats(child.text)
            m = np.eye(4)
            m[:3, 3] = values[:3]
            transform = transform @ m
        elif child.tag == "rotate":
            values = _floats(child.text)
            if len(values) == 4:
                transform = transform @ axis_angle_matrix(values[:3], math.radians(values[3]))
        elif child.tag == "scale":
            values = _floats(child.text)
            transform = transform @ np.diag([values[0], values[1], values[2], 1.0])
    return transform


class ColladaDocument:
    """Id-indexed view over a namespace-stripped Collada tree."""

    def __init__(self, root: ET.Element):
        self.root = root
        self.by_id: Dict[str, ET.Element] = {}
        for element in root.iter():
            element_id = element.get("id")
            if element_id:
                self.by_id[element_id] = element
        self.up_axis = (root.findtext("asset/up_axis") or "").strip().upper()

    def source_array(self, source_id: str) -> Tuple[np.ndarray, int]:
        """(values reshaped to (count, stride), stride) for a <source>."""
        source = self.by_id.get(_ref(source_id))
        if source is None:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Missing source {source_id!r}")
        if source.tag == "vertices":
            # <vertices> forwards to its POSITION input
            for inp in source.findall("input"):
                if inp.get("semantic") == "POSITION":
                    return self.source_array(inp.get("source"))
        array = source.find("float_array")
        values = _floats(array.text if array is not None else None)
        accessor = source.find("technique_common/accessor")
        stride = int(accessor.get("stride", "1")) if accessor is not None else 1
        count = len(values) // stride if stride else 0
        return values[:count * stride].reshape(count, stride), stride

    def name_array(self, source_id: str) -> List[str]:
        source = self.by_id.get(_ref(source_id))
        if source is None:
            return []
        array = source.find("Name_array")
        return (array.text or "").split() if array is not None else []


# ---------- GEOMETRY ----------

PRIMITIVE_TAGS = ("triangles", "polylist", "polygons", "lines", "linestrips", "trifans", "tristrips")


def _primitive_corners(prim: ET.Element) -> Tuple[List[np.ndarray], str]:
    """Index tuples per output corner, grouped per polygon, plus the primitive kind."""
    inputs = prim.findall("input")
    stride = max((int(i.get("offset", "0")) for i in inputs), default=0) + 1
    tag = prim.tag

    if tag == "polylist":
        p = _ints(prim.findtext("p"))
        vcount = _ints(prim.findtext("vcount"))
        polygons, pos = [], 0
        for n in vcount:
            polygons.append(p[pos * stride:(pos + n) * stride].reshape(-1, stride))
            pos += n
        return polygons, "triangles"
    if tag in ("polygons", "trifans", "tristrips", "linestrips"):
        polygons = [_ints(p.text).reshape(-1, stride) for p in prim.findall("p")]
        kind = "lines" if tag == "linestrips" else "triangles"
        if tag == "tristrips":
            strips = []
            for poly in polygons:
                for i in range(len(poly) - 2):
                    strips.append(poly[[i, i + 1, i + 2]] if i % 2 == 0 else poly[[i + 1, i, i + 2]])
            return strips, kind
        return polygons, kind

    p = _ints(prim.findtext("p")).reshape(-1, stride)
    group = 2 if tag == "lines" else 3
    usable = len(p) - len(p) % group
    return [p[i:i + group] for i in range(0, usable, group)], ("lines" if tag == "lines" else "triangles")


def read_primitive(doc: ColladaDocument, prim: ET.Element, name: str) -> Optional[MeshData]:
    inputs = prim.findall("input")
    sources: Dict[str, Tuple[np.ndarray, int]] = {}
    for inp in inputs:
        semantic = inp.get("semantic")
        offset = int(inp.get("offset", "0"))
        if semantic == "VERTEX":
            vertices_el = doc.by_id.get(_ref(inp.get("source")))
            if vertices_el is None:
                continue
            for v_inp in vertices_el.findall("input"):
                sources.setdefault(v_inp.get("semantic"), (doc.source_array(v_inp.get("source"))[0], offset))
        elif semantic in ("NORMAL", "TEXCOORD", "COLOR") and semantic not in sources:
            sources[semantic] = (doc.source_array(inp.get("source"))[0], offset)

    if "POSITION" not in sources:
        return None

    polygons, kind = _primitive_corners(prim)
    corners = []
    for poly in polygons:
        if kind == "lines":
            for i in range(len(poly) - 1):
                corners.extend((poly[i], poly[i + 1]))
        else:
            for i in range(1, len(poly) - 1):
                corners.extend((poly[0], poly[i], poly[i + 1]))
    if not corners:
        return None
    corners_np = np.array(corners, dtype=np.int64)

    def gather(semantic: str, width: int) -> Optional[np.ndarray]:
        if semantic not in sources:
            return None
        values, offset = sources[semantic]
        return values[corners_np[:, offset]][:, :width].astype(np.float32)

    vertices = gather("POSITION", 3)
    return MeshData(
        name=name,
        vertices=vertices,
        normals=gather("NORMAL", 3),
        uvs=gather("TEXCOORD", 2),
        colors=gather("COLOR", 4),
        indices=np.arange(len(vertices), dtype=np.uint32),
        primitive=kind,
    )


def read_geometry(doc: ColladaDocument, geometry: ET.Element) -> List[Tuple[MeshData, Optional[str]]]:
    """Primitives of one <geometry> with their material symbols."""
    name = geometry.get("name") or geometry.get("id", "Geometry")
    mesh = geometry.find("mesh")
    if mesh is None:
        return []
    result = []
    for prim in mesh:
        if prim.tag not in PRIMITIVE_TAGS:
            continue
        data = read_primitive(doc, prim, f"{name}_{len(result)}" if result else name)
        if data is not None:
            result.append((data, prim.get("material")))
    return result


# ---------- DECODER ----------

class DAEDecoder(BaseDecoder):
    name = "dae"
    decoder_id = DecoderId.DAE

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        text = data.decode("utf-8", errors="ignore").strip()
        if not text:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Empty or invalid DAE file content")
        try:
            root = _strip_namespaces(ET.fromstring(text.encode("utf-8")))
        except ET.ParseError as e:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Malformed Collada XML: {e}",
                              hints=[RemediationHint.REEXPORT_FROM_SOURCE]) from e
        if root.tag != "COLLADA":
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Root element is <{root.tag}>, not <COLLADA>",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])

        doc = ColladaDocument(root)
        parsed = ParsedScene(SceneNode(context.primary_asset.basename or "DAE"))
        parsed.up_axis = {"Z_UP": "Z", "X_UP": "X"}.get(doc.up_axis, "Y")

        self._geometry_cache: Dict[str, List[Tuple[MeshData, Optional[str]]]] = {}
        self._material_slots: Dict[str, int] = {}

        visual_scene = self._visual_scene(doc)
        if visual_scene is not None:
            for node in visual_scene.findall("node"):
                parsed.root.children.append(await self._build_node(doc, node, parsed, context, 0))
        else:
            # No scene: show every geometry once
            for geometry in root.iter("geometry"):
                for mesh, symbol in read_geometry(doc, geometry):
                    mesh.material_index = await self._material_slot(doc, symbol, parsed, context)
                    parsed.root.meshes.append(mesh)

        self._read_animations(doc, parsed)
        return parsed

    def _visual_scene(self, doc: ColladaDocument) -> Optional[ET.Element]:
        instance = doc.root.find("scene/instance_visual_scene")
        if instance is not None:
            scene = doc.by_id.get(_ref(instance.get("url")))
            if scene is not None:
                return scene
        return doc.root.find("library_visual_scenes/visual_scene")

    async def _build_node(self, doc: ColladaDocument, node: ET.Element, parsed: ParsedScene,
                          context: DecodeContext, depth: int) -> SceneNode:
        out = SceneNode(node.get("name") or node.get("id") or "Node", node_transform(node))
        if depth > 64:
            return out

        for instance in node.findall("instance_geometry") + node.findall("instance_controller"):
            url = _ref(instance.get("url"))
            if instance.tag == "instance_controller":
                controller = doc.by_id.get(url)
                skin = controller.find("skin") if controller is not None else None
                url = _ref(skin.get("source")) if skin is not None else ""
            bindings = {
                im.get("symbol"): _ref(im.get("target"))
                for im in instance.findall("bind_material/technique_common/instance_material")
            }
            for mesh, symbol in self._geometry(doc, url):
                target = bindings.get(symbol, symbol)
                mesh.material_index = await self._material_slot(doc, target, parsed, context)
                out.meshes.append(mesh)

        for instance in node.findall("instance_node"):
            referenced = doc.by_id.get(_ref(instance.get("url")))
            if referenced is not None:
                out.children.append(await self._build_node(doc, referenced, parsed, context, depth + 1))

        for child in node.findall("node"):
            out.children.append(await self._build_node(doc, child, parsed, context, depth + 1))
        return out

    def _geometry(self, doc: ColladaDocument, geometry_id: str) -> List[Tuple[MeshData, Optional[str]]]:
        if geometry_id not in self._geometry_cache:
            geometry = doc.by_id.get(geometry_id)
            self._geometry_cache[geometry_id] = read_geometry(doc, geometry) if geometry is not None else []
        return self._geometry_cache[geometry_id]

    # ----- materials -----

    async def _material_slot(self, doc: ColladaDocument, material_id: Optional[str],
                             parsed: ParsedScene, context: DecodeContext) -> int:
        key = material_id or ""
        if key not in self._material_slots:
            self._material_slots[key] = parsed.add_material(await self._read_material(doc, key, context))
        return self._material_slots[key]

    async def _read_material(self, doc: ColladaDocument, material_id: str, context: DecodeContext) -> MaterialData:
        element = doc.by_id.get(material_id)
        material = MaterialData((element.get("name") if element is not None else None) or material_id or "Default")
        if element is None:
            return material
        instance = element.find("instance_effect")
        effect = doc.by_id.get(_ref(instance.get("url"))) if instance is not None else None
        if effect is None:
            return material

        technique = None
        for shading in ("phong", "lambert", "blinn", "constant"):
            technique = effect.find(f"profile_COMMON/technique/{shading}")
            if technique is not None:
                break
        if technique is None:
            return material

        color = technique.find("diffuse/color")
        if color is not None:
            values = _floats(color.text)
            material.base_color[:len(values[:4])] = values[:4]

        transparency = technique.findtext("transparency/float")
        if transparency is not None:
            opacity = float(transparency)
            if opacity < 1.0:
                material.explicit_transparency = True
                material.opacity = opacity

        texture = technique.find("diffuse/texture")
        if texture is not None:
            image_name = self._texture_file(doc, effect, texture.get("texture", ""))
            if image_name:
                material.texture_name = image_name
                resolved = await self.load_dependency(context, image_name, ResourceKind.TEXTURE)
                if resolved.found:
                    material.texture = TextureData.from_bytes(image_name, resolved.blob)
        return material

    def _texture_file(self, doc: ColladaDocument, effect: ET.Element, sampler_sid: str) -> Optional[str]:
        """Follow sampler -> surface -> image to a file name."""
        params = {p.get("sid"): p for p in effect.iter("newparam")}
        image_id = sampler_sid
        sampler = params.get(sampler_sid)
        if sampler is not None:
            source = sampler.findtext("sampler2D/source")
            surface = params.get(source) if source else None
            if surface is not None:
                image_id = surface.findtext("surface/init_from") or image_id
            else:
                # Collada 1.5 samplers reference the image directly
                instance = sampler.find("sampler2D/instance_image")
                if instance is not None:
                    image_id = _ref(instance.get("url"))
        image = doc.by_id.get(_ref(image_id.strip()))
        if image is None:
            return None
        path = image.findtext("init_from/ref") or image.findtext("init_from")
        if not path:
            return None
        path = path.strip()
        if path.startswith("file://"):
            path = path[7:]
        return basename(path)

    # ----- animations -----

    def _read_animations(self, doc: ColladaDocument, parsed: ParsedScene) -> None:
        library = doc.root.find("library_animations")
        if library is None:
            return
        node_names = {el.get("id"): (el.get("name") or el.get("id")) for el in doc.root.iter("node")}
        channels = []
        for animation in library.iter("animation"):
            for channel in animation.findall("channel"):
                sampler = doc.by_id.get(_ref(channel.get("source")))
                if sampler is None:
                    continue
                sources = {inp.get("semantic"): inp.get("source") for inp in sampler.findall("input")}
                if "INPUT" not in sources or "OUTPUT" not in sources:
                    continue
                times = doc.source_array(sources["INPUT"])[0].reshape(-1).astype(np.float32)
                values = doc.source_array(sources["OUTPUT"])[0].astype(np.float32)
                interpolation = "LINEAR"
                if "INTERPOLATION" in sources:
                    names = doc.name_array(sources["INTERPOLATION"])
                    interpolation = names[0] if names else interpolation

                target = channel.get("target", "")
                node_id, _, path = target.partition("/")
                channels.append(AnimationChannel(node_names.get(node_id, node_id), path or "transform",
                                                 times, values, interpolation))
        if channels:
            parsed.animations.append(AnimationClip("default", channels))
            log.debug(f"DAE: {len(channels)} animation channels")

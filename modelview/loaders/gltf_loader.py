# modelview/loaders/gltf_loader.py
"""GLB/glTF 2.0 decoder.

Pure Python implementation on top of numpy. External buffers and images come
from sibling assets through the resolver and the resource gateway; inline
data: URIs go through the gateway as well. Draco and meshopt compression are
handled only when the capability is enabled and a codec is registered.
"""

from __future__ import annotations

import json
import struct
from typing import Any, Dict, List, Optional

import numpy as np

from modelview import log
from modelview.assets import Capability, DecodeContext
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.resolver import ResourceKind
from modelview.router import DecoderId, container_kind
from modelview.scene import (
    AnimationChannel,
    AnimationClip,
    MaterialData,
    MeshData,
    ParsedScene,
    SceneNode,
    TextureData,
    trs_matrix,
)

GLB_MAGIC = b"glTF"
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

DRACO_EXTENSION = "KHR_draco_mesh_compression"
MESHOPT_EXTENSIONS = ("EXT_meshopt_compression", "KHR_meshopt_compression")
KTX2_EXTENSION = "KHR_texture_basisu"

# ---------- ACCESSOR HELPERS ----------

COMPONENT_TYPE_DTYPE = {
    5120: np.int8,    # BYTE
    5121: np.uint8,   # UNSIGNED_BYTE
    5122: np.int16,   # SHORT
    5123: np.uint16,  # UNSIGNED_SHORT
    5125: np.uint32,  # UNSIGNED_INT
    5126: np.float32,  # FLOAT
}

TYPE_NUM_COMPONENTS = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

PRIMITIVE_MODES = {0: "points", 1: "lines", 2: "lines", 3: "lines", 4: "triangles", 5: "triangles", 6: "triangles"}


def parse_glb(data: bytes):
    """Split a GLB container into (json document, BIN chunk or None)."""
    if len(data) < 12:
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "File too small to be valid GLB")

    magic = data[0:4]
    if magic != GLB_MAGIC:
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Invalid GLB magic: {magic!r}")

    version, _length = struct.unpack("<II", data[4:12])
    if version != 2:
        raise DecodeError(ErrorKind.VERSION_INCOMPATIBLE, f"Unsupported GLB container version: {version}",
                          hints=[RemediationHint.UPGRADE_GLTF])

    offset = 12
    json_data = None
    bin_data = None

    while offset + 8 <= len(data):
        chunk_length, chunk_type = struct.unpack("<II", data[offset:offset + 8])
        chunk_data = data[offset + 8:offset + 8 + chunk_length]

        if chunk_type == CHUNK_JSON:
            json_data = chunk_data
        elif chunk_type == CHUNK_BIN and bin_data is None:
            bin_data = chunk_data

        # Align to 4 bytes
        offset += 8 + chunk_length
        offset = (offset + 3) & ~3

    if json_data is None:
        raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "No JSON chunk found in GLB")

    return json.loads(json_data.decode("utf-8")), bin_data


def check_version(gltf: dict) -> None:
    version = str(gltf.get("asset", {}).get("version", ""))
    major = version.split(".", 1)[0]
    if major != "2":
        raise DecodeError(
            ErrorKind.VERSION_INCOMPATIBLE,
            f"glTF asset version {version or 'missing'} is not supported (2.x required)",
            hints=[RemediationHint.UPGRADE_GLTF, RemediationHint.REEXPORT_FROM_SOURCE],
        )


class AccessorReader:
    """Reads accessors out of loaded buffers; bufferViews may be overridden after decompression."""

    def __init__(self, gltf: dict, buffers: List[Optional[bytes]]):
        self.gltf = gltf
        self.buffers = buffers
        self.view_overrides: Dict[int, bytes] = {}

    def view_bytes(self, view_index: int) -> Optional[bytes]:
        if view_index in self.view_overrides:
            return self.view_overrides[view_index]
        view = self.gltf["bufferViews"][view_index]
        buffer = self.buffers[view["buffer"]]
        if buffer is None:
            return None
        offset = view.get("byteOffset", 0)
        return buffer[offset:offset + view["byteLength"]]

    def available(self, accessor_index: int) -> bool:
        accessor = self.gltf["accessors"][accessor_index]
        if "bufferView" not in accessor:
            return True
        return self.view_bytes(accessor["bufferView"]) is not None

    def read(self, accessor_index: int) -> np.ndarray:
        """Read data from an accessor as (count, components), keeping the component dtype."""
        accessor = self.gltf["accessors"][accessor_index]
        dtype = np.dtype(COMPONENT_TYPE_DTYPE[accessor["componentType"]])
        num_components = TYPE_NUM_COMPONENTS[accessor["type"]]
        count = accessor["count"]

        if "bufferView" in accessor:
            view_index = accessor["bufferView"]
            view_data = self.view_bytes(view_index)
            if view_data is None:
                raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Accessor {accessor_index} points at a missing buffer")
            byte_offset = accessor.get("byteOffset", 0)
            byte_stride = self.gltf["bufferViews"][view_index].get("byteStride", 0)
            element_size = dtype.itemsize * num_components
            data = _read_strided(view_data, dtype, byte_offset, byte_stride, element_size, count, num_components)
        else:
            data = np.zeros((count, num_components), dtype=dtype)

        if "sparse" in accessor:
            data = self._apply_sparse(accessor["sparse"], data.copy(), dtype, num_components)

        if accessor.get("normalized") and dtype.kind in "iu":
            data = _denormalize(data, dtype)
        return data

    def _apply_sparse(self, sparse: dict, data: np.ndarray, dtype, num_components: int) -> np.ndarray:
        count = sparse["count"]
        idx_info = sparse["indices"]
        idx_dtype = np.dtype(COMPONENT_TYPE_DTYPE[idx_info["componentType"]])
        idx_bytes = self.view_bytes(idx_info["bufferView"])
        val_info = sparse["values"]
        val_bytes = self.view_bytes(val_info["bufferView"])
        if idx_bytes is None or val_bytes is None:
            return data
        indices = np.frombuffer(idx_bytes, dtype=idx_dtype, count=count, offset=idx_info.get("byteOffset", 0))
        values = np.frombuffer(val_bytes, dtype=dtype, count=count * num_components,
                               offset=val_info.get("byteOffset", 0)).reshape(count, num_components)
        data[indices.astype(np.int64)] = values
        return data


def _read_strided(buf: bytes, dtype, byte_offset: int, byte_stride: int, element_size: int,
                  count: int, num_components: int) -> np.ndarray:
    if count == 0:
        return np.zeros((0, num_components), dtype=dtype)
    if byte_stride == 0 or byte_stride == element_size:
        # Tightly packed
        data = np.frombuffer(buf, dtype=dtype, offset=byte_offset, count=count * num_components)
        return data.reshape(count, num_components)

    # Strided data: gather each element's bytes into a packed block
    needed = byte_stride * (count - 1) + element_size
    raw = np.frombuffer(buf, dtype=np.uint8, offset=byte_offset, count=needed)
    padded = np.zeros(byte_stride * count, dtype=np.uint8)
    padded[:needed] = raw
    rows = padded.reshape(count, byte_stride)[:, :element_size]
    return np.ascontiguousarray(rows).view(dtype).reshape(count, num_components)


def _denormalize(data: np.ndarray, dtype) -> np.ndarray:
    info = np.iinfo(dtype)
    result = data.astype(np.float32) / float(info.max)
    if info.min < 0:
        result = np.maximum(result, -1.0)
    return result


def _mode_indices(mode: int, indices: np.ndarray) -> np.ndarray:
    """Strips, fans and loops turned into plain triangle / segment lists."""
    n = len(indices)
    if mode == 5 and n >= 3:  # TRIANGLE_STRIP
        tris = []
        for i in range(n - 2):
            a, b, c = indices[i], indices[i + 1], indices[i + 2]
            tris.extend((a, b, c) if i % 2 == 0 else (b, a, c))
        return np.array(tris, dtype=np.uint32)
    if mode == 6 and n >= 3:  # TRIANGLE_FAN
        return np.array([v for i in range(1, n - 1) for v in (indices[0], indices[i], indices[i + 1])], dtype=np.uint32)
    if mode == 3 and n >= 2:  # LINE_STRIP
        return np.array([v for i in range(n - 1) for v in (indices[i], indices[i + 1])], dtype=np.uint32)
    if mode == 2 and n >= 2:  # LINE_LOOP
        closed = list(indices) + [indices[0]]
        return np.array([v for i in range(n) for v in (closed[i], closed[i + 1])], dtype=np.uint32)
    return np.asarray(indices, dtype=np.uint32)


def _extension_set(gltf: dict, key: str) -> set:
    return set(gltf.get(key, []))


# ---------- DECODER ----------

class GLTFDecoder(BaseDecoder):
    name = "gltf"
    decoder_id = DecoderId.GLTF

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        if container_kind(context.primary_asset.extension, data[:4]) == "glb":
            gltf, bin_chunk = parse_glb(data)
        else:
            gltf, bin_chunk = json.loads(data.decode("utf-8-sig")), None
        if not isinstance(gltf, dict):
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "glTF document is not a JSON object")

        check_version(gltf)
        self._check_extensions(gltf, context)

        buffers = await self._load_buffers(gltf, bin_chunk, context)
        reader = AccessorReader(gltf, buffers)
        await self._decompress_views(gltf, reader, context)

        parsed = ParsedScene()
        textures = await self._parse_textures(gltf, reader, context)
        self._parse_materials(gltf, textures, parsed)
        meshes = await self._parse_meshes(gltf, reader, context, parsed)
        self._parse_nodes(gltf, meshes, parsed, context)
        self._parse_animations(gltf, reader, parsed, context)
        return parsed

    # ----- extensions -----

    def _check_extensions(self, gltf: dict, context: DecodeContext) -> None:
        required = _extension_set(gltf, "extensionsRequired")
        used = _extension_set(gltf, "extensionsUsed") | required

        gated = [(DRACO_EXTENSION, Capability.DRACO)]
        gated += [(name, Capability.MESHOPT) for name in MESHOPT_EXTENSIONS]
        for extension, capability in gated:
            if extension not in used or context.codec(capability) is not None:
                continue
            if extension in required:
                raise DecodeError(
                    ErrorKind.UNSUPPORTED_FORMAT,
                    f"{extension} is required but the {capability.value} codec is not available",
                    hints=[RemediationHint.ENABLE_CODEC, RemediationHint.CONVERT_TO_GLTF],
                    details={"extension": extension, "capability": capability.value},
                )
            context.diagnostics.warn(f"{extension} used without {capability.value} codec; using uncompressed fallback")

        if KTX2_EXTENSION in required and not context.has_capability(Capability.KTX2):
            context.diagnostics.warn(f"{KTX2_EXTENSION} textures skipped: ktx2 support not enabled")

    # ----- buffers -----

    async def _load_buffers(self, gltf: dict, bin_chunk: Optional[bytes], context: DecodeContext) -> List[Optional[bytes]]:
        buffers: List[Optional[bytes]] = []
        for index, buffer in enumerate(gltf.get("buffers", [])):
            uri = buffer.get("uri")
            if uri is None:
                if bin_chunk is None and not buffer.get("extensions"):
                    context.diagnostics.warn(f"Buffer {index} has no data")
                buffers.append(bin_chunk)
            elif uri.startswith("data:"):
                buffers.append(await self.fetch_inline(context, uri))
            else:
                resolved = await self.load_dependency(context, uri, ResourceKind.BUFFER)
                buffers.append(resolved.blob)
        return buffers

    async def _decompress_views(self, gltf: dict, reader: AccessorReader, context: DecodeContext) -> None:
        codec = context.codec(Capability.MESHOPT)
        for view_index, view in enumerate(gltf.get("bufferViews", [])):
            extensions = view.get("extensions", {})
            ext = next((extensions[name] for name in MESHOPT_EXTENSIONS if name in extensions), None)
            if ext is None:
                continue
            if codec is None:
                # Fallback buffer (if any) is read through the plain bufferView
                continue
            source = reader.buffers[ext["buffer"]]
            if source is None:
                continue
            offset = ext.get("byteOffset", 0)
            compressed = source[offset:offset + ext["byteLength"]]
            reader.view_overrides[view_index] = bytes(await codec(compressed, ext))

    # ----- textures and materials -----

    async def _parse_textures(self, gltf: dict, reader: AccessorReader, context: DecodeContext) -> List[Optional[TextureData]]:
        images = gltf.get("images", [])
        loaded_images: Dict[int, Optional[TextureData]] = {}
        textures: List[Optional[TextureData]] = []

        for tex_idx, texture in enumerate(gltf.get("textures", [])):
            source_idx = texture.get("source")
            extensions = texture.get("extensions", {})
            if KTX2_EXTENSION in extensions:
                if context.has_capability(Capability.KTX2):
                    source_idx = extensions[KTX2_EXTENSION].get("source", source_idx)
                elif source_idx is None:
                    context.diagnostics.warn(f"Texture {tex_idx} needs KTX2 support; skipped")
            else:
                for name in ("EXT_texture_webp", "EXT_texture_avif"):
                    if name in extensions:
                        source_idx = extensions[name].get("source", source_idx)

            if source_idx is None or source_idx >= len(images):
                textures.append(None)
                continue
            if source_idx not in loaded_images:
                loaded_images[source_idx] = await self._load_image(images[source_idx], source_idx, reader, context)
            textures.append(loaded_images[source_idx])
        return textures

    async def _load_image(self, image: dict, index: int, reader: AccessorReader,
                          context: DecodeContext) -> Optional[TextureData]:
        name = image.get("name", f"Image_{index}")
        mime_type = image.get("mimeType")
        data = None
        if "bufferView" in image:
            data = reader.view_bytes(image["bufferView"])
        elif "uri" in image:
            uri = image["uri"]
            if uri.startswith("data:"):
                data = await self.fetch_inline(context, uri)
            else:
                resolved = await self.load_dependency(context, uri, ResourceKind.TEXTURE)
                data = resolved.blob
                name = image.get("name", uri)
        if not data:
            return None
        if mime_type == "image/ktx2" and not context.has_capability(Capability.KTX2):
            context.diagnostics.warn(f"KTX2 image {name!r} skipped: ktx2 support not enabled")
            return None
        return TextureData.from_bytes(name, bytes(data), mime_type)

    def _parse_materials(self, gltf: dict, textures: List[Optional[TextureData]], parsed: ParsedScene) -> None:
        for mat_idx, mat in enumerate(gltf.get("materials", [])):
            material = MaterialData(mat.get("name", f"Material_{mat_idx}"))

            pbr = mat.get("pbrMetallicRoughness", {})
            if "baseColorFactor" in pbr:
                material.base_color = np.array(pbr["baseColorFactor"], dtype=np.float32)
            if "baseColorTexture" in pbr:
                tex_index = pbr["baseColorTexture"].get("index")
                if tex_index is not None and tex_index < len(textures):
                    material.texture = textures[tex_index]
                    if material.texture is not None:
                        material.texture_name = material.texture.name

            if mat.get("alphaMode") == "BLEND":
                material.explicit_transparency = True
                material.opacity = float(material.base_color[3])
            parsed.add_material(material)

    # ----- meshes -----

    async def _parse_meshes(self, gltf: dict, reader: AccessorReader, context: DecodeContext,
                            parsed: ParsedScene) -> Dict[int, List[MeshData]]:
        """Parse all meshes; one glTF mesh yields one MeshData per primitive."""
        result: Dict[int, List[MeshData]] = {}
        draco = context.codec(Capability.DRACO)
        default_material = None

        for mesh_idx, mesh in enumerate(gltf.get("meshes", [])):
            mesh_name = mesh.get("name", f"Mesh_{mesh_idx}")
            result[mesh_idx] = []

            for prim_idx, primitive in enumerate(mesh.get("primitives", [])):
                attributes = await self._primitive_attributes(primitive, reader, draco, context)
                if attributes is None or "POSITION" not in attributes:
                    continue

                vertices = attributes["POSITION"].astype(np.float32)
                mode = primitive.get("mode", 4)
                indices = attributes.get("indices")
                if indices is None:
                    indices = np.arange(len(vertices), dtype=np.uint32)
                indices = _mode_indices(mode, np.asarray(indices).reshape(-1).astype(np.uint32))
                if len(indices) and int(indices.max()) >= len(vertices):
                    raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"Index out of range in {mesh_name!r}")

                material_index = primitive.get("material")
                if material_index is None or material_index >= len(parsed.materials):
                    if default_material is None:
                        default_material = parsed.add_material(MaterialData("Default"))
                    material_index = default_material

                normals = attributes.get("NORMAL")
                uvs = attributes.get("TEXCOORD_0")
                colors = attributes.get("COLOR_0")
                prim_name = mesh_name if prim_idx == 0 else f"{mesh_name}_{prim_idx}"
                primitive_kind = PRIMITIVE_MODES.get(mode, "triangles")
                result[mesh_idx].append(MeshData(
                    name=prim_name,
                    vertices=vertices,
                    indices=None if primitive_kind == "points" else indices,
                    normals=normals.astype(np.float32) if normals is not None else None,
                    uvs=uvs.astype(np.float32) if uvs is not None else None,
                    colors=colors.astype(np.float32) if colors is not None else None,
                    primitive=primitive_kind,
                    material_index=material_index,
                ))
        return result

    async def _primitive_attributes(self, primitive: dict, reader: AccessorReader, draco,
                                    context: DecodeContext) -> Optional[Dict[str, np.ndarray]]:
        extensions = primitive.get("extensions", {})
        if DRACO_EXTENSION in extensions and draco is not None:
            ext = extensions[DRACO_EXTENSION]
            compressed = reader.view_bytes(ext["bufferView"])
            if compressed is None:
                context.diagnostics.warn("Draco primitive skipped: buffer missing")
                return None
            decoded = await draco(bytes(compressed), ext)
            return {key: np.asarray(value) for key, value in dict(decoded).items()}

        wanted = ("POSITION", "NORMAL", "TEXCOORD_0", "COLOR_0")
        attributes = primitive.get("attributes", {})
        out: Dict[str, np.ndarray] = {}
        for semantic in wanted:
            if semantic not in attributes:
                continue
            if not reader.available(attributes[semantic]):
                context.diagnostics.warn(f"Attribute {semantic} skipped: buffer unavailable")
                if semantic == "POSITION":
                    return None
                continue
            out[semantic] = reader.read(attributes[semantic])
        if "indices" in primitive:
            if not reader.available(primitive["indices"]):
                context.diagnostics.warn("Primitive skipped: index buffer unavailable")
                return None
            out["indices"] = reader.read(primitive["indices"])
        return out

    # ----- hierarchy -----

    def _parse_nodes(self, gltf: dict, meshes: Dict[int, List[MeshData]], parsed: ParsedScene,
                     context: DecodeContext) -> None:
        nodes = gltf.get("nodes", [])
        built: List[SceneNode] = []
        for node_idx, node in enumerate(nodes):
            if "matrix" in node:
                # Column-major in the file
                transform = np.array(node["matrix"], dtype=np.float64).reshape(4, 4).T
            else:
                transform = trs_matrix(
                    node.get("translation", [0, 0, 0]),
                    node.get("rotation", [0, 0, 0, 1]),
                    node.get("scale", [1, 1, 1]),
                )
            built.append(SceneNode(node.get("name", f"Node_{node_idx}"), transform,
                                   meshes=list(meshes.get(node.get("mesh"), []))))

        parents: Dict[int, int] = {}
        for node_idx, node in enumerate(nodes):
            for child in node.get("children", []):
                if not 0 <= child < len(built):
                    continue
                if child in parents or self._is_ancestor(child, node_idx, parents):
                    context.diagnostics.warn(f"Node {child} dropped from node {node_idx}: hierarchy must be a tree")
                    continue
                parents[child] = node_idx
                built[node_idx].children.append(built[child])

        scenes = gltf.get("scenes", [])
        default_scene = gltf.get("scene", 0)
        if scenes and default_scene < len(scenes):
            root_indices = scenes[default_scene].get("nodes", [])
        else:
            root_indices = [i for i in range(len(nodes)) if i not in parents]

        for index in root_indices:
            if 0 <= index < len(built):
                parsed.root.children.append(built[index])

    @staticmethod
    def _is_ancestor(candidate: int, node_idx: int, parents: Dict[int, int]) -> bool:
        current: Optional[int] = node_idx
        while current is not None:
            if current == candidate:
                return True
            current = parents.get(current)
        return False

        if not nodes:
            for mesh_list in meshes.values():
                parsed.root.meshes.extend(mesh_list)

    # ----- animations -----

    def _parse_animations(self, gltf: dict, reader: AccessorReader, parsed: ParsedScene,
                          context: DecodeContext) -> None:
        nodes = gltf.get("nodes", [])
        for anim_idx, anim in enumerate(gltf.get("animations", [])):
            anim_name = anim.get("name", f"Animation_{anim_idx}")
            channels = []
            samplers = anim.get("samplers", [])

            for channel in anim.get("channels", []):
                target = channel.get("target", {})
                node_idx = target.get("node")
                path = target.get("path")  # translation, rotation, scale, weights
                if node_idx is None or path not in ("translation", "rotation", "scale"):
                    continue
                sampler = samplers[channel["sampler"]]
                if not (reader.available(sampler["input"]) and reader.available(sampler["output"])):
                    context.diagnostics.warn(f"Animation {anim_name!r}: channel data unavailable")
                    continue

                times = reader.read(sampler["input"]).astype(np.float32).reshape(-1)
                values = reader.read(sampler["output"]).astype(np.float32)
                node_name = nodes[node_idx].get("name", f"Node_{node_idx}") if node_idx < len(nodes) else f"Node_{node_idx}"
                channels.append(AnimationChannel(node_name, path, times, values,
                                                 sampler.get("interpolation", "LINEAR")))

            if channels:
                parsed.animations.append(AnimationClip(anim_name, channels))
            else:
                log.debug(f"Animation {anim_name!r} has no usable channels")

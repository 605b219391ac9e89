"""Renderer-ready scene types produced by every decoder."""

from __future__ import annotations

import io
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from modelview.errors import ErrorKind


PIL_FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
    "WEBP": "image/webp",
    "TGA": "image/x-tga",
    "DDS": "image/vnd-ms.dds",
}


# ---------- GEOMETRY ----------

class MeshData:
    """One drawable primitive: triangles, line segments or points."""

    def __init__(self, name: str, vertices: np.ndarray, indices: Optional[np.ndarray] = None,
                 normals: Optional[np.ndarray] = None, uvs: Optional[np.ndarray] = None,
                 colors: Optional[np.ndarray] = None, primitive: str = "triangles",
                 material_index: int = -1):
        self.name = name
        self.vertices = np.asarray(vertices, dtype=np.float32).reshape(-1, 3)
        self.indices = None if indices is None else np.asarray(indices, dtype=np.uint32).reshape(-1)
        self.normals = normals    # (N, 3) float32 or None
        self.uvs = uvs            # (N, 2) float32 or None
        self.colors = colors      # (N, 3|4) float32 or None
        self.primitive = primitive
        self.material_index = material_index

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    def _element_count(self) -> int:
        return len(self.indices) if self.indices is not None else len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return self._element_count() // 3 if self.primitive == "triangles" else 0

    @property
    def segment_count(self) -> int:
        return self._element_count() // 2 if self.primitive == "lines" else 0

    def finite_vertex_count(self) -> int:
        if len(self.vertices) == 0:
            return 0
        return int(np.count_nonzero(np.all(np.isfinite(self.vertices), axis=1)))


class TextureData:
    """Raw image bytes plus whatever Pillow could read from the header."""

    def __init__(self, name: str, data: bytes, mime_type: Optional[str] = None,
                 width: int = 0, height: int = 0):
        self.name = name
        self.data = data
        self.mime_type = mime_type or "application/octet-stream"
        self.width = width
        self.height = height

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "TextureData":
        """Sniff size and format with Pillow; unreadable images keep the declared MIME type."""
        width = height = 0
        sniffed = None
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                sniffed = PIL_FORMAT_MIME.get(img.format or "")
        except (UnidentifiedImageError, OSError, ValueError):
            pass
        return cls(name, data, mime_type or sniffed, width, height)


@dataclass
class MaterialData:
    name: str
    base_color: np.ndarray = field(default_factory=lambda: np.ones(4, dtype=np.float32))
    opacity: float = 1.0
    transparent: bool = False
    # Set by decoders when the source format states transparency on purpose
    explicit_transparency: bool = False
    visible: bool = True
    texture: Optional[TextureData] = None
    texture_name: Optional[str] = None


# ---------- HIERARCHY ----------

class SceneNode:
    def __init__(self, name: str, transform: Optional[np.ndarray] = None,
                 meshes: Optional[List[MeshData]] = None,
                 children: Optional[List["SceneNode"]] = None):
        self.name = name
        self.transform = np.eye(4, dtype=np.float64) if transform is None else np.asarray(transform, dtype=np.float64)
        self.meshes = meshes or []
        self.children = children or []

    def add_child(self, child: "SceneNode") -> "SceneNode":
        self.children.append(child)
        return child

    def walk(self, parent: Optional[np.ndarray] = None) -> Iterator[Tuple["SceneNode", np.ndarray]]:
        """Yield (node, world matrix) depth-first."""
        world = self.transform if parent is None else parent @ self.transform
        yield self, world
        for child in self.children:
            yield from child.walk(world)

    def iter_meshes(self) -> Iterator[MeshData]:
        for node, _ in self.walk():
            yield from node.meshes


class BoundingBox:
    def __init__(self, min_point=None, max_point=None):
        self.min = None if min_point is None else np.asarray(min_point, dtype=np.float64)
        self.max = None if max_point is None else np.asarray(max_point, dtype=np.float64)

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        points = points[np.all(np.isfinite(points), axis=1)]
        if len(points) == 0:
            return cls()
        return cls(points.min(axis=0), points.max(axis=0))

    @property
    def is_empty(self) -> bool:
        return self.min is None or self.max is None

    @property
    def size(self) -> np.ndarray:
        if self.is_empty:
            return np.zeros(3)
        return self.max - self.min

    @property
    def center(self) -> np.ndarray:
        if self.is_empty:
            return np.zeros(3)
        return (self.min + self.max) * 0.5

    def union(self, other: "BoundingBox") -> "BoundingBox":
        if self.is_empty:
            return other
        if other.is_empty:
            return self
        return BoundingBox(np.minimum(self.min, other.min), np.maximum(self.max, other.max))

    def translated(self, offset) -> "BoundingBox":
        if self.is_empty:
            return self
        return BoundingBox(self.min + offset, self.max + offset)

    def to_dict(self) -> Optional[Dict[str, List[float]]]:
        if self.is_empty:
            return None
        return {"min": [float(v) for v in self.min], "max": [float(v) for v in self.max]}


# ---------- ANIMATION ----------

class AnimationChannel:
    def __init__(self, target: str, path: str, times: np.ndarray, values: np.ndarray,
                 interpolation: str = "LINEAR"):
        self.target = target    # node name
        self.path = path        # translation | rotation | scale | matrix
        self.times = times
        self.values = values
        self.interpolation = interpolation


class AnimationClip:
    def __init__(self, name: str, channels: List[AnimationChannel], duration: Optional[float] = None):
        self.name = name
        self.channels = channels
        if duration is None:
            duration = max((float(c.times[-1]) for c in channels if len(c.times)), default=0.0)
        self.duration = duration


# ---------- DIAGNOSTICS ----------

@dataclass
class DiagnosticIssue:
    kind: ErrorKind
    resource: str
    message: str = ""


@dataclass
class Diagnostics:
    """Non-fatal problems collected during one decode call."""

    missing_resources: Set[str] = field(default_factory=set)
    warnings: List[str] = field(default_factory=list)
    issues: List[DiagnosticIssue] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def record_missing(self, name: str, message: str = "") -> None:
        self.missing_resources.add(name)
        self.issues.append(DiagnosticIssue(ErrorKind.MISSING_DEPENDENCY, name, message))

    def record_violation(self, address: str, message: str = "") -> None:
        self.issues.append(DiagnosticIssue(ErrorKind.SANDBOX_VIOLATION, address[:128], message))

    @property
    def is_clean(self) -> bool:
        return not (self.missing_resources or self.warnings or self.issues)

    def to_dict(self) -> dict:
        return {
            "missing_resources": sorted(self.missing_resources),
            "warnings": list(self.warnings),
            "issues": [
                {"kind": issue.kind.value, "resource": issue.resource, "message": issue.message}
                for issue in self.issues
            ],
        }


# ---------- RESULTS ----------

class ParsedScene:
    """What a decoder hands back before the shared post-processing."""

    def __init__(self, root: Optional[SceneNode] = None):
        self.root = root or SceneNode("Root")
        self.materials: List[MaterialData] = []
        self.animations: List[AnimationClip] = []
        # "Y" (renderer convention), "Z" (CAD / printing convention) or "X"
        self.up_axis: str = "Y"
        self.is_placeholder = False

    def add_material(self, material: MaterialData) -> int:
        self.materials.append(material)
        return len(self.materials) - 1


class NormalizedModel:
    """Decoded, axis-corrected and recentred model."""

    def __init__(self, scene_root: SceneNode, bounding_box: BoundingBox,
                 animation_clips: List[AnimationClip], diagnostics: Diagnostics,
                 materials: List[MaterialData], decoder_id=None, source_name: str = "",
                 is_placeholder: bool = False, stats: Optional[Dict[str, int]] = None):
        self.scene_root = scene_root
        self.bounding_box = bounding_box
        self.animation_clips = animation_clips
        self.diagnostics = diagnostics
        self.materials = materials
        self.decoder_id = decoder_id
        self.source_name = source_name
        self.is_placeholder = is_placeholder
        self.stats = stats or {}

    def iter_meshes(self) -> Iterator[MeshData]:
        return self.scene_root.iter_meshes()

    def world_vertices(self) -> np.ndarray:
        """All vertices in world space, stacked (M, 3)."""
        chunks = []
        for node, world in self.scene_root.walk():
            for mesh in node.meshes:
                if len(mesh.vertices):
                    chunks.append(transform_points(world, mesh.vertices))
        if not chunks:
            return np.zeros((0, 3))
        return np.vstack(chunks)


def transform_points(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ matrix[:3, :3].T + matrix[:3, 3]


def trs_matrix(translation=(0.0, 0.0, 0.0), rotation=(0.0, 0.0, 0.0, 1.0), scale=(1.0, 1.0, 1.0)) -> np.ndarray:
    """4x4 from translation, xyzw quaternion and scale."""
    x, y, z, w = (float(v) for v in rotation)
    xx, yy, zz = x * x, y * y, z * z
    xy, xz, yz = x * y, x * z, y * z
    wx, wy, wz = w * x, w * y, w * z

    rot = np.array([
        [1 - 2 * (yy + zz), 2 * (xy - wz), 2 * (xz + wy)],
        [2 * (xy + wz), 1 - 2 * (xx + zz), 2 * (yz - wx)],
        [2 * (xz - wy), 2 * (yz + wx), 1 - 2 * (xx + yy)],
    ], dtype=np.float64)

    transform = np.eye(4, dtype=np.float64)
    transform[:3, :3] = rot * np.asarray(scale, dtype=np.float64)
    transform[:3, 3] = translation
    return transform


def axis_angle_matrix(axis, angle: float) -> np.ndarray:
    """4x4 rotation by angle (radians) about axis. A zero axis gives identity."""
    x, y, z = (float(v) for v in axis[:3])
    norm = math.sqrt(x * x + y * y + z * z)
    if norm == 0.0:
        return np.eye(4)
    x, y, z = x / norm, y / norm, z / norm
    c, s = math.cos(angle), math.sin(angle)
    t = 1.0 - c
    m = np.eye(4)
    m[:3, :3] = [
        [t * x * x + c, t * x * y - s * z, t * x * z + s * y],
        [t * x * y + s * z, t * y * y + c, t * y * z - s * x],
        [t * x * z - s * y, t * y * z + s * x, t * z * z + c],
    ]
    return m

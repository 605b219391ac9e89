# modelview/loaders/x3d_loader.py
"""X3D is recognised but not parsed: the decoder returns a labelled placeholder."""

from __future__ import annotations

import io

import numpy as np
from PIL import Image, ImageColor, ImageDraw

from modelview import log
from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.primitives import box_mesh
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode, TextureData

PLACEHOLDER_COLOR = "#ff6b6b"
PLACEHOLDER_OPACITY = 0.7
LABEL_LINES = ("X3D Format", "Limited Support")
LABEL_SIZE = (256, 64)


def render_label() -> bytes:
    """PNG banner shown above the placeholder cube."""
    image = Image.new("RGBA", LABEL_SIZE, ImageColor.getrgb(PLACEHOLDER_COLOR))
    draw = ImageDraw.Draw(image)
    width, height = LABEL_SIZE
    for i, text in enumerate(LABEL_LINES):
        left, top, right, bottom = draw.textbbox((0, 0), text)
        y = height * (i + 1) / (len(LABEL_LINES) + 1)
        draw.text(((width - (right - left)) / 2, y - (bottom - top) / 2), text, fill="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def label_quad(width: float = 2.0, height: float = 0.5, y: float = 1.5) -> MeshData:
    w, h = width / 2, height / 2
    vertices = np.array([[-w, y - h, 0.0], [w, y - h, 0.0], [w, y + h, 0.0], [-w, y + h, 0.0]], dtype=np.float32)
    uvs = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]], dtype=np.float32)
    return MeshData("Label", vertices, indices=np.array([0, 1, 2, 0, 2, 3], dtype=np.uint32), uvs=uvs)


def looks_like_x3d(text: str) -> bool:
    head = text.lower()
    return "x3d" in head or "<?xml" in head


class X3DDecoder(BaseDecoder):
    name = "x3d"
    decoder_id = DecoderId.X3D

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        text = data.decode("utf-8", errors="replace")
        if not text.strip():
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Empty or invalid X3D file")
        if not looks_like_x3d(text):
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "File does not appear to be a valid X3D file",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])

        parsed = ParsedScene(SceneNode("X3DPlaceholder"))
        parsed.is_placeholder = True

        box = MaterialData("X3DPlaceholder")
        box.base_color[:3] = np.array(ImageColor.getrgb(PLACEHOLDER_COLOR), dtype=np.float32) / 255.0
        box.explicit_transparency = True
        box.opacity = PLACEHOLDER_OPACITY

        label = MaterialData("X3DLabel")
        label.texture = TextureData.from_bytes("x3d_label.png", render_label(), "image/png")

        cube = box_mesh(1.0, name="Placeholder")
        cube.material_index = parsed.add_material(box)
        quad = label_quad()
        quad.material_index = parsed.add_material(label)
        parsed.root.meshes.extend((cube, quad))

        log.warn(f"X3D {context.primary_asset.name}: showing placeholder, X3D geometry is not decoded")
        context.diagnostics.warn("X3D has limited support; a placeholder was shown instead of the model")
        return parsed

# modelview/loaders/gcode_loader.py
"""
G-code toolpath decoder for 3D printing and CNC files.

Only material-depositing moves are drawn. When the file carries extrusion
(E) values anywhere, a move is drawn if E grows by more than
GCodeSpec.extrusion_epsilon, it is not a G0 rapid, and its XY length is
under GCodeSpec.long_travel_cutoff. Files without any E value draw every
non-rapid move. A Z change starts a new layer; each layer becomes one line
mesh. Points are emitted as (x, z, -y), so the result is already Y-up.
"""

from __future__ import annotations

import math
import re
from typing import Dict, List, Optional, Tuple

import numpy as np
from PIL import ImageColor

from modelview import log
from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.loaders.decode_spec import GCodeSpec
from modelview.router import DecoderId
from modelview.scene import MaterialData, MeshData, ParsedScene, SceneNode

BINARY_MAGIC = b"GCOD"
TOOLPATH_OPACITY = 0.9

LINE_NUMBER_RE = re.compile(r"^N\d+\s*", re.IGNORECASE)
CHECKSUM_RE = re.compile(r"\*\d+\s*$")
PAREN_COMMENT_RE = re.compile(r"\([^)]*\)")
COMMAND_RE = re.compile(r"^([GM])(\d+)", re.IGNORECASE)
FIELD_RE = re.compile(r"([XYZEF])\s*([-+]?\d*\.?\d+)", re.IGNORECASE)
ANY_COMMAND_RE = re.compile(r"[GM]\d+", re.IGNORECASE)

GCodeCommand = Tuple[str, Dict[str, float]]


# ---------- TEXT ----------

def is_binary_gcode(data: bytes, spec: GCodeSpec) -> bool:
    if data[:4] == BINARY_MAGIC:
        return True
    sample = np.frombuffer(data[:spec.binary_sample_size], dtype=np.uint8)
    if len(sample) == 0:
        return False
    non_printable = ((sample < 32) | (sample > 126)) & ~np.isin(sample, (9, 10, 13))
    return np.count_nonzero(non_printable) / len(sample) > spec.binary_nonprintable_ratio


def extract_printable_runs(data: bytes, min_run_length: int) -> str:
    """Join runs of printable ASCII (newlines included) longer than min_run_length."""
    pattern = re.compile(rb"[\x20-\x7e\r\n]{%d,}" % (min_run_length + 1))
    return "\n".join(match.group().decode("ascii") for match in pattern.finditer(data))


def parse_command(line: str) -> Optional[GCodeCommand]:
    """Parse one line, e.g. "G1 X10 Y5 E0.4 ; perimeter" -> ("G1", {"X": 10.0, "Y": 5.0, "E": 0.4})."""
    line = line.split(";", 1)[0]
    line = PAREN_COMMENT_RE.sub(" ", line).strip()
    line = CHECKSUM_RE.sub("", LINE_NUMBER_RE.sub("", line))
    match = COMMAND_RE.match(line)
    if not match:
        return None
    kind = f"{match.group(1).upper()}{int(match.group(2))}"
    fields: Dict[str, float] = {}
    for axis, value in FIELD_RE.findall(line[match.end():]):
        fields.setdefault(axis.upper(), float(value))
    return kind, fields


def parse_commands(text: str) -> List[GCodeCommand]:
    commands = []
    for line in text.splitlines():
        command = parse_command(line)
        if command is not None:
            commands.append(command)
    return commands


# ---------- TOOLPATH ----------

class Toolpath:
    def __init__(self):
        # Per layer: (2 * segments, 3) float32, endpoints in Y-up order
        self.layers: List[np.ndarray] = []
        self.layer_heights: List[float] = []
        self.commands = 0
        self.has_extrusion = False

    @property
    def vertex_count(self) -> int:
        return sum(len(layer) for layer in self.layers)


def extract_toolpath(text: str, spec: GCodeSpec) -> Toolpath:
    commands = parse_commands(text)
    toolpath = Toolpath()
    toolpath.commands = len(commands)
    toolpath.has_extrusion = any("E" in fields for _, fields in commands)

    x = y = z = e = 0.0
    last_z: Optional[float] = None
    absolute = True
    absolute_e = True
    current: List[Tuple[float, float, float]] = []

    def close_layer(height):
        if current:
            toolpath.layers.append(np.array(current, dtype=np.float32))
            toolpath.layer_heights.append(height)
            current.clear()

    for kind, fields in commands:
        if kind == "G90":
            absolute = absolute_e = True
        elif kind == "G91":
            absolute = absolute_e = False
        elif kind == "M82":
            absolute_e = True
        elif kind == "M83":
            absolute_e = False
        elif kind == "G92":
            x, y, z, e = (fields.get(axis, value) for axis, value in zip("XYZE", (x, y, z, e)))
        elif kind in ("G0", "G1"):
            if absolute:
                nx, ny, nz = fields.get("X", x), fields.get("Y", y), fields.get("Z", z)
            else:
                nx, ny, nz = x + fields.get("X", 0.0), y + fields.get("Y", 0.0), z + fields.get("Z", 0.0)
            ne = fields.get("E", e) if absolute_e else e + fields.get("E", 0.0)

            if last_z is not None and nz != last_z:
                close_layer(last_z)

            moved = (nx, ny, nz) != (x, y, z)
            if toolpath.has_extrusion:
                emit = (
                    moved
                    and ne - e > spec.extrusion_epsilon
                    and kind != "G0"
                    and math.hypot(nx - x, ny - y) < spec.long_travel_cutoff
                )
            else:
                emit = moved and kind != "G0"
            if emit:
                current.append((x, z, -y))
                current.append((nx, nz, -ny))

            x, y, z, e = nx, ny, nz, ne
            last_z = nz

    close_layer(z)
    return toolpath


# ---------- COLOURING ----------

def hsl_to_rgb(hue: np.ndarray, saturation: float, lightness: float) -> np.ndarray:
    """Vectorised HSL -> RGB, hue in [0, 1). Returns (N, 3) float32."""
    hue = np.asarray(hue, dtype=np.float64)
    chroma = (1.0 - abs(2.0 * lightness - 1.0)) * saturation
    sector_pos = (hue % 1.0) * 6.0
    x = chroma * (1.0 - np.abs(sector_pos % 2.0 - 1.0))
    c = np.full_like(sector_pos, chroma)
    zero = np.zeros_like(sector_pos)
    sector = np.floor(sector_pos).astype(np.int64) % 6
    r = np.choose(sector, [c, x, zero, zero, x, c])
    g = np.choose(sector, [x, c, c, x, zero, zero])
    b = np.choose(sector, [zero, zero, x, c, c, x])
    m = lightness - chroma / 2.0
    return (np.stack([r, g, b], axis=1) + m).astype(np.float32)


def gradient_colors(total: int) -> np.ndarray:
    """One colour per vertex of the whole toolpath, hue (i / total) * 360 degrees."""
    if total == 0:
        return np.zeros((0, 3), dtype=np.float32)
    return hsl_to_rgb(np.arange(total) / total, 0.8, 0.5)


def parse_single_color(value: str, context: DecodeContext) -> np.ndarray:
    try:
        rgb = ImageColor.getrgb(value)
    except ValueError as e:
        log.warn(e, f"Invalid G-code colour {value!r}")
        context.diagnostics.warn(f"Invalid toolpath colour {value!r}, using {GCodeSpec.single_color}")
        rgb = ImageColor.getrgb(GCodeSpec.single_color)
    return np.array(rgb[:3], dtype=np.float32) / 255.0


# ---------- DECODER ----------

class GCodeDecoder(BaseDecoder):
    name = "gcode"
    decoder_id = DecoderId.GCODE

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        spec = context.spec.gcode
        binary = is_binary_gcode(data, spec)
        if binary:
            text = extract_printable_runs(data, spec.binary_min_run_length)
            if not ANY_COMMAND_RE.search(text):
                raise DecodeError(
                    ErrorKind.EMPTY_OR_CORRUPT_INPUT,
                    "Binary G-code format not supported",
                    hints=[RemediationHint.EXPORT_PLAIN_GCODE],
                )
            context.diagnostics.warn("Binary G-code: commands recovered from printable text runs")
        else:
            text = data.decode("utf-8", errors="replace")

        if not text.strip():
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Empty G-code file")

        toolpath = extract_toolpath(text, spec)
        if not toolpath.layers:
            raise DecodeError(
                ErrorKind.NO_GEOMETRY_FOUND,
                "No valid G-code movement commands found",
                hints=[RemediationHint.EXPORT_PLAIN_GCODE] if binary else [],
                details={"commands": toolpath.commands, "has_extrusion": toolpath.has_extrusion},
            )

        parsed = ParsedScene(SceneNode("GCodeToolpath"))
        material = MaterialData("Toolpath", explicit_transparency=True, opacity=TOOLPATH_OPACITY)
        gradient = spec.color_mode != "single"
        if not gradient:
            material.base_color[:3] = parse_single_color(spec.single_color, context)
        slot = parsed.add_material(material)

        colors = gradient_colors(toolpath.vertex_count) if gradient else None
        offset = 0
        for i, points in enumerate(toolpath.layers):
            parsed.root.meshes.append(MeshData(
                f"Layer_{i + 1}",
                points,
                indices=np.arange(len(points), dtype=np.uint32),
                colors=colors[offset:offset + len(points)] if gradient else None,
                primitive="lines",
                material_index=slot,
            ))
            offset += len(points)

        log.info(f"G-code {context.primary_asset.name}: {toolpath.commands} commands, "
                 f"{len(toolpath.layers)} layers, {toolpath.vertex_count // 2} segments, "
                 f"extrusion={toolpath.has_extrusion}")
        return parsed

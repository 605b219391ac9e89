# modelview/loaders/vrml_loader.py
"""
VRML 2.0 (VRML97) decoder.

The lexer is strict. When it or the parser rejects a file, repairs are
applied in two tiers and the parse is retried after each:

  tier 1: BOM and control-character stripping, trailing-comma removal
  tier 2: Unicode punctuation folding, numeric literal repair,
          string escape repair

The unmodified text is always tried first.
"""

from __future__ import annotations

import re
from collections import namedtuple
from typing import Dict, List, Optional, Tuple

import numpy as np

from modelview import log
from modelview.assets import DecodeContext, basename
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.loaders.base import BaseDecoder
from modelview.primitives import box_mesh, cone_mesh, cylinder_mesh, sphere_mesh
from modelview.resolver import ResourceKind
from modelview.router import DecoderId
from modelview.scene import (
    Diagnostics,
    MaterialData,
    MeshData,
    ParsedScene,
    SceneNode,
    TextureData,
    axis_angle_matrix,
)


class VRMLSyntaxError(ValueError):
    def __init__(self, message: str, line: int = 0):
        super().__init__(f"line {line}: {message}" if line else message)
        self.line = line


# ---------- LEXER ----------

Token = namedtuple("Token", "kind value line")

TOKEN_RE = re.compile(r"""
    (?P<space>[\t\n\r ]+)
  | (?P<comment>\#[^\n]*)
  | (?P<punct>[\[\]{},])
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<word>[^\x00-\x20\x7f\ufeff"\#\[\]{},\\]+)
""", re.VERBOSE | re.DOTALL)

INVALID_ESCAPE_RE = re.compile(r'(?:^|[^\\])(?:\\\\)*\\[^"\\]')
ESCAPE_RE = re.compile(r'\\(["\\])')
NUMERIC_RE = re.compile(r"^[+-]?(?:\d|\.\d)")


def tokenize(text: str) -> List[Token]:
    tokens = []
    pos, line = 0, 1
    while pos < len(text):
        match = TOKEN_RE.match(text, pos)
        if match is None:
            raise VRMLSyntaxError(f"Unexpected character {text[pos]!r}", line)
        kind, value = match.lastgroup, match.group()
        if kind == "string":
            body = value[1:-1]
            if INVALID_ESCAPE_RE.search(body):
                raise VRMLSyntaxError("Invalid escape sequence in string", line)
            tokens.append(Token("string", ESCAPE_RE.sub(r"\1", body), line))
        elif kind in ("punct", "word"):
            tokens.append(Token(kind, value, line))
        line += value.count("\n")
        pos = match.end()
    return tokens


# ---------- PARSER ----------

class VRMLNode:
    def __init__(self, node_type: str, name: Optional[str] = None):
        self.type = node_type
        self.name = name
        self.fields: Dict[str, object] = {}

    def __repr__(self):
        return f"VRMLNode({self.type!r}, {self.name!r})"


class VRMLParser:
    """Schema-less parser: field values are nodes, strings, lists or runs of scalars."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.defs: Dict[str, VRMLNode] = {}

    def parse(self) -> List[VRMLNode]:
        nodes = []
        while self._peek() is not None:
            token = self._peek()
            if token.kind == "word" and token.value in ("PROTO", "EXTERNPROTO"):
                self._skip_proto()
            elif token.kind == "word" and token.value == "ROUTE":
                self._skip_route()
            else:
                node = self._node()
                if node is not None:
                    nodes.append(node)
        return nodes

    def _peek(self, offset: int = 0) -> Optional[Token]:
        i = self.pos + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise VRMLSyntaxError("Unexpected end of file", self.tokens[-1].line if self.tokens else 0)
        self.pos += 1
        return token

    def _is_punct(self, token: Optional[Token], *values: str) -> bool:
        return token is not None and token.kind == "punct" and token.value in values

    def _expect(self, value: str) -> Token:
        token = self._next()
        if not self._is_punct(token, value):
            raise VRMLSyntaxError(f"Expected {value!r}, found {token.value!r}", token.line)
        return token

    def _node(self) -> Optional[VRMLNode]:
        token = self._next()
        if token.kind != "word":
            raise VRMLSyntaxError(f"Expected a node, found {token.value!r}", token.line)
        if token.value == "NULL":
            return None
        if token.value == "USE":
            name = self._next()
            if name.value not in self.defs:
                raise VRMLSyntaxError(f"USE of undefined node {name.value!r}", name.line)
            return self.defs[name.value]

        def_name = None
        if token.value == "DEF":
            def_name = self._next().value
            token = self._next()
            if token.kind != "word":
                raise VRMLSyntaxError(f"Expected a node type after DEF {def_name}", token.line)

        node = VRMLNode(token.value, def_name)
        if def_name:
            self.defs[def_name] = node
        self._expect("{")
        while True:
            token = self._peek()
            if token is None:
                raise VRMLSyntaxError(f"Unterminated {node.type} node", self.tokens[-1].line)
            if self._is_punct(token, "}"):
                self.pos += 1
                return node
            self._field(node)

    def _field(self, node: VRMLNode) -> None:
        token = self._peek()
        if token.kind != "word":
            raise VRMLSyntaxError(f"Expected a field name in {node.type}, found {token.value!r}", token.line)
        if token.value in ("PROTO", "EXTERNPROTO"):
            self._skip_proto()
            return
        if token.value == "ROUTE":
            self._skip_route()
            return
        self.pos += 1
        name = token.value
        if name in ("eventIn", "eventOut"):
            self._next()
            self._next()
            return
        if name in ("field", "exposedField"):
            self._next()
            name = self._next().value
        following = self._peek()
        if following is not None and following.kind == "word" and following.value == "IS":
            self.pos += 2
            return
        node.fields[name] = self._value()

    def _starts_node(self) -> bool:
        token = self._peek()
        if token.value in ("DEF", "USE", "NULL"):
            return True
        return self._is_punct(self._peek(1), "{")

    def _value(self):
        token = self._peek()
        if token is None:
            raise VRMLSyntaxError("Unexpected end of file", self.tokens[-1].line)
        if token.kind == "punct":
            if token.value == "[":
                return self._list()
            raise VRMLSyntaxError(f"Unexpected {token.value!r}", token.line)
        if token.kind == "string":
            self.pos += 1
            return token.value
        if self._starts_node():
            return self._node()
        return self._scalars()

    def _scalars(self) -> list:
        values = [self._scalar(self._next())]
        while True:
            token = self._peek()
            if token is None:
                return values
            if self._is_punct(token, ","):
                if self._is_punct(self._peek(1), "]", "}"):
                    raise VRMLSyntaxError("Trailing comma", token.line)
                self.pos += 1
                continue
            if token.kind == "word" and NUMERIC_RE.match(token.value):
                values.append(self._scalar(self._next()))
                continue
            return values

    def _scalar(self, token: Token):
        if token.kind != "word":
            raise VRMLSyntaxError(f"Expected a value, found {token.value!r}", token.line)
        if token.value == "TRUE":
            return True
        if token.value == "FALSE":
            return False
        try:
            if token.value.lower().lstrip("+-").startswith("0x"):
                return int(token.value, 16)
            return float(token.value)
        except ValueError:
            raise VRMLSyntaxError(f"Bad numeric literal {token.value!r}", token.line) from None

    def _list(self) -> list:
        self._expect("[")
        items = []
        while True:
            token = self._peek()
            if token is None:
                raise VRMLSyntaxError("Unterminated list", self.tokens[-1].line)
            if token.kind == "punct":
                if token.value == "]":
                    self.pos += 1
                    return items
                if token.value == ",":
                    if self._is_punct(self._peek(1), "]"):
                        raise VRMLSyntaxError("Trailing comma", token.line)
                    self.pos += 1
                    continue
                raise VRMLSyntaxError(f"Unexpected {token.value!r} in list", token.line)
            if token.kind == "string":
                items.append(token.value)
                self.pos += 1
            elif self._starts_node():
                items.append(self._node())
            else:
                items.append(self._scalar(self._next()))

    def _skip_block(self, open_value: str, close_value: str) -> None:
        self._expect(open_value)
        depth = 1
        while depth:
            token = self._next()
            if self._is_punct(token, open_value):
                depth += 1
            elif self._is_punct(token, close_value):
                depth -= 1

    def _skip_proto(self) -> None:
        keyword = self._next()
        self._next()
        self._skip_block("[", "]")
        if keyword.value == "PROTO":
            self._skip_block("{", "}")
        else:
            self._value()

    def _skip_route(self) -> None:
        # ROUTE a.field TO b.field
        for _ in range(4):
            self._next()


def parse_vrml(text: str) -> List[VRMLNode]:
    return VRMLParser(tokenize(text)).parse()


# ---------- RECOVERY ----------

CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufeff]")
TRAILING_COMMA_RE = re.compile(r",(\s*[\]}])")

PUNCTUATION_FOLD = str.maketrans({
    "\u201c": '"', "\u201d": '"', "\u201e": '"', "\u00ab": '"', "\u00bb": '"',
    "\u2018": "'", "\u2019": "'", "\u00b4": "'",
    "\u2212": "-", "\u2010": "-", "\u2011": "-", "\u2013": "-", "\u2014": "-",
    "\u00a0": " ", "\u2009": " ", "\u202f": " ", "\u3000": " ",
    "\uff0c": ",", "\uff3b": "[", "\uff3d": "]", "\uff5b": "{", "\uff5d": "}",
})

NUMERIC_FIXES = (
    (re.compile(r"(?<=\d)\.\.(?=\d)"), "."),
    (re.compile(r"\b(\d+\.?\d*(?:[eE][-+]?\d+)?)[fFdD]\b"), r"\1"),
    (re.compile(r"-?\b1\.#(?:INF|IND|QNAN|SNAN)\w*"), "0"),
)

STRING_RE = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)


def repair_conservative(text: str) -> str:
    text = CONTROL_RE.sub("", text)
    return TRAILING_COMMA_RE.sub(r"\1", text)


def _repair_escapes(match) -> str:
    body = match.group()[1:-1]
    out = []
    i = 0
    while i < len(body):
        if body[i] == "\\":
            if i + 1 < len(body) and body[i + 1] in ('"', "\\"):
                out.append(body[i:i + 2])
                i += 2
                continue
            # lone backslash, e.g. a Windows path
            out.append("\\\\")
        else:
            out.append(body[i])
        i += 1
    return '"' + "".join(out) + '"'


def repair_aggressive(text: str) -> str:
    text = text.translate(PUNCTUATION_FOLD)
    for pattern, replacement in NUMERIC_FIXES:
        text = pattern.sub(replacement, text)
    return STRING_RE.sub(_repair_escapes, text)


def parse_with_recovery(text: str) -> Tuple[List[VRMLNode], int]:
    """Parse text, falling back through the repair tiers. Returns (nodes, tier used)."""
    try:
        return parse_vrml(text), 0
    except VRMLSyntaxError as e:
        log.debug(f"VRML parse failed: {e}")
        error = e

    attempt = text
    for tier, repair in ((1, repair_conservative), (2, repair_aggressive)):
        repaired = repair(attempt)
        if repaired == attempt:
            continue
        attempt = repaired
        try:
            return parse_vrml(attempt), tier
        except VRMLSyntaxError as e:
            log.debug(f"VRML parse failed after tier {tier} repairs: {e}")
            error = e
    raise error


# ---------- FIELD ACCESS ----------

def _floats(node: Optional[VRMLNode], field: str, default=()) -> np.ndarray:
    value = node.fields.get(field) if node is not None else None
    if value is None:
        return np.array(default, dtype=np.float64)
    if not isinstance(value, list):
        value = [value]
    return np.array([v for v in value if isinstance(v, (int, float)) and not isinstance(v, bool)],
                    dtype=np.float64)


def _vector(node: VRMLNode, field: str, default) -> np.ndarray:
    values = _floats(node, field)
    return values[:len(default)] if len(values) >= len(default) else np.array(default, dtype=np.float64)


def _number(node: VRMLNode, field: str, default: float) -> float:
    values = _floats(node, field)
    return float(values[0]) if len(values) else default


def _ints(node: Optional[VRMLNode], field: str) -> np.ndarray:
    return _floats(node, field).astype(np.int64)


def _points(node: Optional[VRMLNode], field: str, width: int) -> np.ndarray:
    values = _floats(node, field)
    count = len(values) // width
    return values[:count * width].reshape(count, width)


def _bool(node: VRMLNode, field: str, default: bool) -> bool:
    value = node.fields.get(field)
    if isinstance(value, list) and value and isinstance(value[0], bool):
        return value[0]
    return default


def _child_node(node: Optional[VRMLNode], field: str) -> Optional[VRMLNode]:
    value = node.fields.get(field) if node is not None else None
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, VRMLNode)), None)
    return value if isinstance(value, VRMLNode) else None


def _child_nodes(node: VRMLNode, field: str) -> List[VRMLNode]:
    value = node.fields.get(field)
    if isinstance(value, VRMLNode):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, VRMLNode)]
    return []


def _strings(node: VRMLNode, field: str) -> List[str]:
    value = node.fields.get(field)
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return []


def transform_matrix(node: VRMLNode) -> np.ndarray:
    """T * C * R * SR * S * -SR * -C"""
    def translation(v):
        m = np.eye(4)
        m[:3, 3] = v
        return m

    t = _vector(node, "translation", (0.0, 0.0, 0.0))
    c = _vector(node, "center", (0.0, 0.0, 0.0))
    r = _vector(node, "rotation", (0.0, 0.0, 1.0, 0.0))
    so = _vector(node, "scaleOrientation", (0.0, 0.0, 1.0, 0.0))
    s = _vector(node, "scale", (1.0, 1.0, 1.0))

    rotation = axis_angle_matrix(r[:3], r[3])
    scale_orientation = axis_angle_matrix(so[:3], so[3])
    scale = np.diag([s[0], s[1], s[2], 1.0])
    return (translation(t) @ translation(c) @ rotation @ scale_orientation @ scale
            @ scale_orientation.T @ translation(-c))


def _split_polygons(index: np.ndarray) -> List[np.ndarray]:
    """Positions into a -1 separated index list, one array per polygon."""
    positions = np.arange(len(index))
    parts = np.split(positions, np.flatnonzero(index < 0))
    return [p[index[p] >= 0] for p in parts if np.any(index[p] >= 0)]


# ---------- SCENE BUILDING ----------

GROUPING_NODES = ("Group", "Transform", "Anchor", "Billboard", "Collision")


class SceneBuilder:
    """Turns parsed VRML nodes into a ParsedScene. Textures are collected for later loading."""

    def __init__(self, name: str, diagnostics: Diagnostics):
        self.parsed = ParsedScene(SceneNode(name))
        self.diagnostics = diagnostics
        self.appearance_slots: Dict[int, int] = {}
        self.textures: List[Tuple[MaterialData, str]] = []
        self.default_slot: Optional[int] = None

    def build(self, nodes: List[VRMLNode]) -> ParsedScene:
        for node in nodes:
            self._visit(node, self.parsed.root, 0)
        return self.parsed

    def _visit(self, node: Optional[VRMLNode], parent: SceneNode, depth: int) -> None:
        if node is None or depth > 64:
            return
        if node.type in GROUPING_NODES:
            transform = transform_matrix(node) if node.type == "Transform" else None
            group = parent.add_child(SceneNode(node.name or node.type, transform))
            for child in _child_nodes(node, "children"):
                self._visit(child, group, depth + 1)
        elif node.type == "Switch":
            choices = _child_nodes(node, "choice")
            which = int(_number(node, "whichChoice", -1))
            if 0 <= which < len(choices):
                self._visit(choices[which], parent, depth + 1)
        elif node.type == "LOD":
            levels = _child_nodes(node, "level")
            if levels:
                self._visit(levels[0], parent, depth + 1)
        elif node.type == "Shape":
            self._shape(node, parent)
        elif node.type == "Inline":
            self.diagnostics.warn(f"Inline {_strings(node, 'url')} not loaded")
        else:
            log.debug(f"VRML: ignoring {node.type} node")

    def _shape(self, node: VRMLNode, parent: SceneNode) -> None:
        geometry = _child_node(node, "geometry")
        if geometry is None:
            return
        mesh = self._geometry(geometry)
        if mesh is None:
            return
        mesh.material_index = self._appearance_slot(_child_node(node, "appearance"))
        parent.meshes.append(mesh)

    def _geometry(self, geometry: VRMLNode) -> Optional[MeshData]:
        name = geometry.name or geometry.type
        if geometry.type == "IndexedFaceSet":
            return self._face_set(geometry, name)
        if geometry.type == "IndexedLineSet":
            return self._line_set(geometry, name)
        if geometry.type == "PointSet":
            points = _points(_child_node(geometry, "coord"), "point", 3)
            colors = _points(_child_node(geometry, "color"), "color", 3)
            return MeshData(name, points.astype(np.float32), primitive="points",
                            colors=colors.astype(np.float32) if len(colors) == len(points) else None)
        if geometry.type == "Box":
            return box_mesh(*_vector(geometry, "size", (2.0, 2.0, 2.0)), name=name)
        if geometry.type == "Sphere":
            return sphere_mesh(_number(geometry, "radius", 1.0), name=name)
        if geometry.type == "Cylinder":
            return cylinder_mesh(_number(geometry, "radius", 1.0), _number(geometry, "height", 2.0), name=name)
        if geometry.type == "Cone":
            return cone_mesh(_number(geometry, "bottomRadius", 1.0), _number(geometry, "height", 2.0), name=name)
        self.diagnostics.warn(f"Unsupported VRML geometry {geometry.type} skipped")
        return None

    def _face_set(self, geometry: VRMLNode, name: str) -> Optional[MeshData]:
        points = _points(_child_node(geometry, "coord"), "point", 3)
        index = _ints(geometry, "coordIndex")
        polygons = _split_polygons(index)
        ccw = _bool(geometry, "ccw", True)

        corners, corner_faces = [], []
        for face, poly in enumerate(polygons):
            for j in range(1, len(poly) - 1):
                if ccw:
                    corners.extend((poly[0], poly[j], poly[j + 1]))
                else:
                    corners.extend((poly[0], poly[j + 1], poly[j]))
                corner_faces.extend((face, face, face))
        if not corners:
            return None

        flat = np.array(corners, dtype=np.int64)
        coord_index = index[flat]
        if coord_index.max() >= len(points):
            self.diagnostics.warn(f"{name}: coordIndex out of range, shape skipped")
            return None

        uvs = None
        tex_coords = _points(_child_node(geometry, "texCoord"), "point", 2)
        if len(tex_coords):
            tex_index = _ints(geometry, "texCoordIndex")
            uv_index = tex_index[flat] if len(tex_index) == len(index) else coord_index
            if uv_index.min() >= 0 and uv_index.max() < len(tex_coords):
                uvs = tex_coords[uv_index].astype(np.float32)

        colors = None
        palette = _points(_child_node(geometry, "color"), "color", 3)
        if len(palette):
            color_index = _ints(geometry, "colorIndex")
            if _bool(geometry, "colorPerVertex", True):
                lookup = color_index[flat] if len(color_index) == len(index) else coord_index
            else:
                faces = np.array(corner_faces, dtype=np.int64)
                lookup = color_index[faces] if len(color_index) >= len(polygons) else faces
            if lookup.min() >= 0 and lookup.max() < len(palette):
                colors = palette[lookup].astype(np.float32)

        vertices = points[coord_index].astype(np.float32)
        return MeshData(name, vertices, indices=np.arange(len(vertices), dtype=np.uint32),
                        uvs=uvs, colors=colors)

    def _line_set(self, geometry: VRMLNode, name: str) -> Optional[MeshData]:
        points = _points(_child_node(geometry, "coord"), "point", 3)
        index = _ints(geometry, "coordIndex")
        segments = []
        for line in _split_polygons(index):
            for j in range(len(line) - 1):
                segments.extend((line[j], line[j + 1]))
        if not segments:
            return None
        coord_index = index[np.array(segments, dtype=np.int64)]
        if coord_index.max() >= len(points):
            self.diagnostics.warn(f"{name}: coordIndex out of range, shape skipped")
            return None

        colors = None
        palette = _points(_child_node(geometry, "color"), "color", 3)
        if len(palette) and coord_index.max() < len(palette):
            colors = palette[coord_index].astype(np.float32)
        vertices = points[coord_index].astype(np.float32)
        return MeshData(name, vertices, indices=np.arange(len(vertices), dtype=np.uint32),
                        colors=colors, primitive="lines")

    def _appearance_slot(self, appearance: Optional[VRMLNode]) -> int:
        if appearance is None:
            if self.default_slot is None:
                self.default_slot = self.parsed.add_material(MaterialData("Default"))
            return self.default_slot
        key = id(appearance)
        if key in self.appearance_slots:
            return self.appearance_slots[key]

        material = MaterialData(appearance.name or f"Appearance_{len(self.appearance_slots)}")
        vrml_material = _child_node(appearance, "material")
        if vrml_material is not None:
            material.base_color[:3] = _vector(vrml_material, "diffuseColor", (0.8, 0.8, 0.8))
            transparency = _number(vrml_material, "transparency", 0.0)
            if transparency > 0.0:
                material.explicit_transparency = True
                material.opacity = 1.0 - transparency

        texture = _child_node(appearance, "texture")
        if texture is not None and texture.type == "ImageTexture":
            urls = _strings(texture, "url")
            if urls:
                self.textures.append((material, urls[0]))

        slot = self.parsed.add_material(material)
        self.appearance_slots[key] = slot
        return slot


# ---------- DECODER ----------

VRML1_HEADER_RE = re.compile(r"^\s*#VRML\s+V1\.", re.IGNORECASE)


class VRMLDecoder(BaseDecoder):
    name = "vrml"
    decoder_id = DecoderId.VRML

    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        text = data.decode("utf-8", errors="replace")
        if not text.strip():
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "Empty or invalid VRML file")
        if "vrml" not in text.lower():
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "File does not appear to be a valid VRML file",
                              hints=[RemediationHint.CHECK_FILE_EXTENSION])
        if VRML1_HEADER_RE.match(text.lstrip("\ufeff")):
            raise DecodeError(ErrorKind.VERSION_INCOMPATIBLE, "VRML 1.0 is not supported",
                              hints=[RemediationHint.CONVERT_TO_GLTF])

        try:
            nodes, tier = parse_with_recovery(text)
        except VRMLSyntaxError as e:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, f"VRML syntax error at {e}",
                              hints=[RemediationHint.REPAIR_VRML_SYNTAX],
                              details={"line": e.line}) from e
        if tier:
            log.warn(f"VRML {context.primary_asset.name} parsed after tier {tier} repairs")
            context.diagnostics.warn(f"Parsed after tier {tier} syntax repairs")

        builder = SceneBuilder(context.primary_asset.basename or "VRML", context.diagnostics)
        parsed = builder.build(nodes)
        for material, url in builder.textures:
            material.texture_name = basename(url)
            material.texture = await self._texture(url, context)
        return parsed

    async def _texture(self, url: str, context: DecodeContext) -> Optional[TextureData]:
        if url.startswith("data:"):
            blob = await self.fetch_inline(context, url)
            return TextureData.from_bytes("inline", blob) if blob else None
        name = basename(url)
        resolved = await self.load_dependency(context, name, ResourceKind.TEXTURE)
        if not resolved.found:
            return None
        return TextureData.from_bytes(name, resolved.blob)

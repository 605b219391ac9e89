import io

import numpy as np
import pytest
from PIL import Image

from modelview import DecodeError, ErrorKind, RawAsset, decode_sync
from modelview.loaders.obj_loader import parse_mtl, parse_obj

OBJ_TEXT = b"""# quad with a diagonal line
mtllib quad.mtl
o Quad
v 0 0 0
v 1 0 0
v 1 1 0
v 0 1 0
vt 0 0
vt 1 0
vt 1 1
vt 0 1
usemtl red
f 1/1 2/2 3/3 4/4
l 1 3
"""

MTL_TEXT = b"""newmtl red
Kd 1 0 0
d 0.5
map_Kd -s 1 1 1 textures/red.png
"""


def png_bytes(size=(2, 2)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (255, 0, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_parse_obj_groups():
    positions, colors, tex_coords, normals, groups = parse_obj(OBJ_TEXT.decode(), "quad")
    assert len(positions) == 4
    assert len(tex_coords) == 4
    assert colors == [] and normals == []
    assert len(groups) == 1
    group = groups[0]
    assert (group.name, group.material) == ("Quad", "red")
    assert len(group.faces) == 6
    assert group.lines == [0, 2]


def test_negative_indices_and_vertex_colors():
    text = "v 0 0 0 1 0 0\nv 1 0 0 0 1 0\nv 0 1 0 0 0 1\nf -3 -2 -1\n"
    positions, colors, _, _, groups = parse_obj(text, "tri")
    assert len(colors) == 3
    assert [corner[0] for corner in groups[0].faces] == [0, 1, 2]


def test_parse_mtl():
    materials = parse_mtl("newmtl a\nKd 0.1 0.2 0.3\nTr 0.25\nnewmtl b\nd 1\nmap_Kd b.png\n")
    assert materials["a"].diffuse == (0.1, 0.2, 0.3)
    assert materials["a"].dissolve == 0.75
    assert materials["b"].dissolve == 1.0
    assert materials["b"].diffuse_map == "b.png"


def test_decode_with_material_library():
    siblings = [RawAsset(MTL_TEXT, "quad.mtl"), RawAsset(png_bytes(), "red.png")]
    model = decode_sync(RawAsset(OBJ_TEXT, "quad.obj"), siblings)

    assert model.diagnostics.missing_resources == set()
    assert model.stats["triangles"] == 2
    assert model.stats["segments"] == 1
    names = [mesh.name for mesh in model.iter_meshes()]
    assert names == ["Quad", "Quad_lines"]

    material = model.materials[0]
    assert material.name == "red"
    np.testing.assert_allclose(material.base_color, [1, 0, 0, 0.5])
    assert material.transparent
    assert material.texture_name == "red.png"
    assert (material.texture.width, material.texture.height) == (2, 2)


def test_missing_material_library_is_not_fatal():
    model = decode_sync(RawAsset(OBJ_TEXT, "quad.obj"))
    assert "quad.mtl" in model.diagnostics.missing_resources
    material = model.materials[0]
    assert material.name == "red"
    np.testing.assert_allclose(material.base_color, [1, 1, 1, 1])
    assert not material.transparent


def test_missing_texture_is_recorded():
    model = decode_sync(RawAsset(OBJ_TEXT, "quad.obj"), [RawAsset(MTL_TEXT, "quad.mtl")])
    assert model.diagnostics.missing_resources == {"red.png"}
    assert model.materials[0].texture is None


def test_zero_dissolve_is_clamped_to_opaque():
    mtl = b"newmtl red\nKd 0 1 0\nd 0\n"
    model = decode_sync(RawAsset(OBJ_TEXT, "quad.obj"), [RawAsset(mtl, "quad.mtl")])
    material = model.materials[0]
    assert material.opacity == 1.0
    assert not material.transparent


def test_library_name_is_case_insensitive():
    model = decode_sync(RawAsset(OBJ_TEXT, "quad.obj"), [RawAsset(MTL_TEXT, "Quad.MTL")])
    assert "quad.mtl" not in model.diagnostics.missing_resources
    assert model.materials[0].name == "red"


def test_face_index_out_of_range():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 9\n", "bad.obj"))
    assert info.value.kind is ErrorKind.EMPTY_OR_CORRUPT_INPUT


def test_vertices_without_faces():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"v 0 0 0\nv 1 0 0\n", "cloud.obj"))
    assert info.value.kind is ErrorKind.NO_GEOMETRY_FOUND

from modelview.references import (
    parse_gltf_dependencies,
    parse_mtl_texture_files,
    parse_obj_material_files,
    strip_map_options,
    texture_basename,
)


def test_obj_material_files_unique_in_order():
    text = "mtllib a.mtl\nv 0 0 0\n  mtllib a.mtl\nmtllib b.mtl  \n# mtllib c.mtl\n"
    assert parse_obj_material_files(text) == ["a.mtl", "b.mtl"]


def test_obj_material_file_with_spaces():
    assert parse_obj_material_files("mtllib my materials.mtl\n") == ["my materials.mtl"]


def test_strip_map_options():
    assert strip_map_options("-o 1 1 1 -s 2 2 2 tex/wood.png") == "tex/wood.png"
    assert strip_map_options("-bm 0.5 bump.png") == "bump.png"
    assert strip_map_options("-clamp on tex.png") == "tex.png"
    assert strip_map_options("plain.png") == "plain.png"


def test_texture_basename():
    assert texture_basename('"C:\\textures\\wood.png"') == "wood.png"
    assert texture_basename("-blendu off maps/skin.jpg") == "skin.jpg"


def test_mtl_texture_files():
    text = (
        "newmtl a\n"
        "map_Kd textures/wood.png\n"
        "bump -bm 1 normal.png\n"
        "newmtl b\n"
        "map_Kd textures/wood.png\n"
        "map_d alpha.png\n"
    )
    assert parse_mtl_texture_files(text) == ["wood.png", "normal.png", "alpha.png"]


def test_gltf_dependencies_skip_inline():
    gltf = {
        "buffers": [{"uri": "scene.bin"}, {"uri": "data:application/octet-stream;base64,AAAA"}, {"byteLength": 4}],
        "images": [{"uri": "textures/albedo.png"}, {"bufferView": 0}],
    }
    assert parse_gltf_dependencies(gltf) == {
        "buffers": ["scene.bin"],
        "images": ["textures/albedo.png"],
    }

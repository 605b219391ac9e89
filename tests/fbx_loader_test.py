import struct
from types import SimpleNamespace as NS

import numpy as np
import pytest

from modelview import DecodeError, ErrorKind, RawAsset, RemediationHint, decode_sync
from modelview.loaders import fbx_loader
from modelview.loaders.fbx_loader import (
    FBX_BINARY_MAGIC,
    classify_failure,
    nearest_supported,
    patch_version,
    read_version,
)


def fbx_header(version: int) -> bytes:
    return FBX_BINARY_MAGIC + b"\x1a\x00" + struct.pack("<I", version) + b"\x00" * 32


def vec(x=0.0, y=0.0, z=0.0, w=0.0):
    return NS(x=x, y=y, z=z, w=w)


def fake_scene():
    mesh = NS(
        name="TriMesh",
        num_faces=1,
        faces=[NS(index_begin=0, num_indices=3)],
        vertices=[vec(0, 0, 0), vec(1, 0, 0), vec(0, 2, 0)],
        vertex_indices=[0, 1, 2],
        vertex_normal=NS(values=[], indices=[]),
        uv_sets=[],
        materials=[NS(name="Red")],
    )
    transform = NS(translation=vec(5, 0, 0), rotation=vec(w=1.0), scale=vec(1, 1, 1))
    identity = NS(translation=vec(), rotation=vec(w=1.0), scale=vec(1, 1, 1))
    child = NS(name="Tri", local_transform=transform, mesh=mesh, children=[])
    root = NS(name="RootNode", local_transform=identity, mesh=None, children=[child])
    red = NS(name="Red", pbr=NS(base_color=NS(has_value=True, value_vec4=vec(1, 0, 0, 1), texture=None)))
    return NS(root_node=root, materials=[red])


def test_read_version():
    assert read_version(fbx_header(7400)) == 7400
    assert read_version(b"; FBX 6.1.0 project file\nFBXHeaderExtension:  {\n FBXVersion: 6100\n}") == 6100
    assert read_version(b"; FBX 7.3.0 project file\n") == 7300
    assert read_version(FBX_BINARY_MAGIC) is None


def test_nearest_supported():
    assert nearest_supported(6100) == 7100
    assert nearest_supported(7600) == 7500
    assert nearest_supported(7700) == 7700


def test_patch_version():
    assert read_version(patch_version(fbx_header(6100), 7100)) == 7100
    ascii_fbx = b"FBXHeaderExtension:  {\n FBXVersion: 6100\n}"
    assert read_version(patch_version(ascii_fbx, 7100)) == 7100


def test_patch_version_rewrites_ascii_header():
    header_only = b"; FBX 6.1.0 project file\n; ----\nObjects:  {\n}\n"
    patched = patch_version(header_only, 7100)
    assert patched.startswith(b"; FBX 7.1.0 project file\n")
    assert read_version(patched) == 7100


def test_classify_failure():
    assert classify_failure("anything", patched=True) is ErrorKind.STRUCTURAL_INCOMPATIBILITY
    assert classify_failure("Unsupported FBX version", patched=True) is ErrorKind.VERSION_INCOMPATIBLE
    assert classify_failure("Unsupported FBX version", patched=False) is ErrorKind.VERSION_INCOMPATIBLE
    assert classify_failure("Bad header", patched=False) is ErrorKind.EMPTY_OR_CORRUPT_INPUT


def test_too_old_is_rejected_before_parsing(monkeypatch):
    def must_not_run(data):
        raise AssertionError("parser should not be called")

    monkeypatch.setattr(fbx_loader, "load_fbx_scene", must_not_run)
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(fbx_header(5800), "old.fbx"))
    assert info.value.kind is ErrorKind.VERSION_INCOMPATIBLE
    assert RemediationHint.REEXPORT_FBX_2013 in info.value.hints


def test_legacy_file_is_patched_then_classified(monkeypatch):
    seen = []

    def failing_parser(data):
        seen.append(read_version(data))
        raise RuntimeError("unexpected node layout")

    monkeypatch.setattr(fbx_loader, "load_fbx_scene", failing_parser)
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(fbx_header(6100), "legacy.fbx"))
    assert seen == [7100]
    error = info.value
    assert error.kind is ErrorKind.STRUCTURAL_INCOMPATIBILITY
    assert list(error.hints) == [RemediationHint.CONVERT_TO_GLTF, RemediationHint.REEXPORT_FBX_2013]
    assert error.details["patched"] is True
    assert error.decoder == "fbx"


@pytest.mark.parametrize("message, kind", [
    ("Unsupported FBX version 9000", ErrorKind.VERSION_INCOMPATIBLE),
    ("Truncated file", ErrorKind.EMPTY_OR_CORRUPT_INPUT),
])
def test_unpatched_failures(monkeypatch, message, kind):
    def failing_parser(data):
        raise RuntimeError(message)

    monkeypatch.setattr(fbx_loader, "load_fbx_scene", failing_parser)
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(fbx_header(7400), "model.fbx"))
    assert info.value.kind is kind


def test_not_an_fbx_file():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"hello world, definitely not fbx", "model.fbx"))
    assert info.value.kind is ErrorKind.EMPTY_OR_CORRUPT_INPUT
    assert RemediationHint.CHECK_FILE_EXTENSION in info.value.hints


def test_extract_scene():
    root, mesh_materials, materials = fbx_loader.extract_scene(fake_scene())
    node = root.children[0].children[0]
    assert node.name == "Tri"
    assert node.meshes[0].triangle_count == 1
    assert mesh_materials[id(node.meshes[0])] == "Red"
    assert materials == [{"name": "Red", "color": (1, 0, 0, 1), "texture": None, "content": None}]


def test_decode_fake_scene(monkeypatch):
    monkeypatch.setattr(fbx_loader, "load_fbx_scene", lambda data: fake_scene())
    model = decode_sync(RawAsset(fbx_header(7400), "tri.fbx"))
    np.testing.assert_allclose(model.bounding_box.size, [1, 2, 0], atol=1e-6)
    np.testing.assert_allclose(model.bounding_box.center, [0, 0, 0], atol=1e-6)
    assert [m.name for m in model.materials] == ["Red"]
    np.testing.assert_allclose(model.materials[0].base_color, [1, 0, 0, 1])
    assert model.stats["triangles"] == 1


def test_legacy_ascii_header_is_patched(monkeypatch):
    seen = []

    def failing_parser(data):
        seen.append(read_version(data))
        raise RuntimeError("unexpected node layout")

    monkeypatch.setattr(fbx_loader, "load_fbx_scene", failing_parser)
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"; FBX 6.1.0 project file\nObjects:  {\n}\n", "legacy.fbx"))
    assert seen == [7100]
    assert info.value.kind is ErrorKind.STRUCTURAL_INCOMPATIBILITY
    assert info.value.details == {"version": 6100, "patched": True}

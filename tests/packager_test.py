import json

import numpy as np
import pytest

from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.packager import diagnostics_report, error_report, scene_stats, world_bounding_box
from modelview.router import DecoderId
from modelview.scene import (
    AnimationChannel,
    AnimationClip,
    BoundingBox,
    Diagnostics,
    MaterialData,
    MeshData,
    NormalizedModel,
    ParsedScene,
    SceneNode,
    TextureData,
)


def _triangle(name="Tri", offset=0.0):
    vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32) + offset
    return MeshData(name, vertices, indices=np.array([0, 1, 2]))


def test_world_bounding_box_applies_transforms():
    root = SceneNode("Root", meshes=[_triangle()])
    moved = np.eye(4)
    moved[:3, 3] = (10, 0, 0)
    child = root.add_child(SceneNode("Child", moved, meshes=[_triangle("Moved")]))
    scaled = np.diag([2.0, 2.0, 2.0, 1.0])
    child.add_child(SceneNode("Grandchild", scaled, meshes=[_triangle("Scaled")]))

    box = world_bounding_box(root)
    np.testing.assert_allclose(box.min, [0, 0, 0])
    np.testing.assert_allclose(box.max, [12, 2, 0])


def test_world_bounding_box_empty():
    assert world_bounding_box(SceneNode("Root")).is_empty


def test_scene_stats():
    parsed = ParsedScene()
    parsed.root.meshes.append(_triangle())
    node = parsed.root.add_child(SceneNode("Lines"))
    node.meshes.append(MeshData("Seg", np.zeros((4, 3)), indices=np.arange(4), primitive="lines"))
    node.meshes.append(MeshData("Cloud", np.zeros((5, 3)), primitive="points"))
    parsed.add_material(MaterialData("Plain"))
    textured = MaterialData("Textured")
    textured.texture = TextureData("t.png", b"not an image")
    parsed.add_material(textured)
    parsed.animations.append(AnimationClip("Spin", [
        AnimationChannel("Lines", "rotation", np.array([0.0, 2.0]), np.zeros((2, 4))),
    ]))

    assert scene_stats(parsed) == {
        "nodes": 2,
        "meshes": 3,
        "vertices": 12,
        "triangles": 1,
        "segments": 2,
        "points": 5,
        "materials": 2,
        "textures": 1,
        "animations": 1,
    }


def test_diagnostics_report_is_json_serialisable():
    diagnostics = Diagnostics()
    diagnostics.record_missing("wood.png", "texture not supplied")
    diagnostics.record_missing("body.png")
    diagnostics.warn("Legacy FBX 6100 parsed as 7100")
    diagnostics.record_violation("blob:modelview/abc", "blocked")

    root = SceneNode("Root", meshes=[_triangle()])
    clip = AnimationClip("Walk", [AnimationChannel("Root", "translation", np.array([0.0, 1.5]), np.zeros((2, 3)))])
    model = NormalizedModel(root, BoundingBox([0, 0, 0], [1, 1, 0]), [clip], diagnostics, [],
                            DecoderId.FBX, "rig.fbx", stats={"meshes": 1})

    report = diagnostics_report(model)
    assert report["missing_resources"] == ["body.png", "wood.png"]
    assert report["warnings"] == ["Legacy FBX 6100 parsed as 7100"]
    assert [issue["kind"] for issue in report["issues"]] == [
        "missing_dependency", "missing_dependency", "sandbox_violation",
    ]
    assert report["source"] == "rig.fbx"
    assert report["decoder"] == "fbx"
    assert report["placeholder"] is False
    assert report["bounding_box"] == {"min": [0.0, 0.0, 0.0], "max": [1.0, 1.0, 0.0]}
    assert report["animations"] == ["Walk"]
    assert report["stats"] == {"meshes": 1}
    json.dumps(report)


def test_error_report():
    error = DecodeError(
        ErrorKind.VERSION_INCOMPATIBLE,
        "FBX version 5800 is too old",
        hints=[RemediationHint.CONVERT_TO_GLTF, RemediationHint.REEXPORT_FBX_2013],
        decoder="fbx",
        details={"version": 5800},
    )
    assert error_report(error) == {
        "kind": "version_incompatible",
        "fatal": True,
        "message": "FBX version 5800 is too old",
        "decoder": "fbx",
        "hints": ["convert_to_gltf", "reexport_fbx_2013"],
        "details": {"version": 5800},
    }
    assert str(error) == "[fbx] version_incompatible: FBX version 5800 is too old"


@pytest.mark.parametrize("kind, fatal", [
    (ErrorKind.UNSUPPORTED_FORMAT, True),
    (ErrorKind.EMPTY_OR_CORRUPT_INPUT, True),
    (ErrorKind.NO_GEOMETRY_FOUND, True),
    (ErrorKind.VERSION_INCOMPATIBLE, True),
    (ErrorKind.STRUCTURAL_INCOMPATIBILITY, True),
    (ErrorKind.MISSING_DEPENDENCY, False),
    (ErrorKind.SANDBOX_VIOLATION, False),
])
def test_fatal_kinds(kind, fatal):
    assert kind.fatal is fatal


def test_diagnostics_clean():
    diagnostics = Diagnostics()
    assert diagnostics.is_clean
    diagnostics.warn("something")
    assert not diagnostics.is_clean

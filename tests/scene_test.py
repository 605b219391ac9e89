import io
import math
import unittest

import numpy as np
from PIL import Image

from modelview.primitives import box_mesh, cone_mesh, cylinder_mesh, sphere_mesh
from modelview.scene import (
    BoundingBox,
    MeshData,
    SceneNode,
    TextureData,
    axis_angle_matrix,
    transform_points,
    trs_matrix,
)


def assert_points_approx(actual, expected, places=6):
    np.testing.assert_allclose(np.asarray(actual, dtype=np.float64), np.asarray(expected, dtype=np.float64),
                               atol=10**(-places))


class TestTransforms(unittest.TestCase):
    def test_trs_identity(self):
        assert_points_approx(trs_matrix(), np.eye(4))

    def test_trs_quarter_turn_about_z(self):
        s = math.sin(math.pi / 4)
        m = trs_matrix((1.0, 2.0, 3.0), (0.0, 0.0, s, s), (2.0, 2.0, 2.0))
        assert_points_approx(transform_points(m, [[1.0, 0.0, 0.0]]), [[1.0, 4.0, 3.0]])

    def test_axis_angle_matches_quaternion(self):
        s = math.sin(math.pi / 4)
        from_quat = trs_matrix(rotation=(0.0, 0.0, s, s))
        assert_points_approx(axis_angle_matrix([0, 0, 1], math.pi / 2), from_quat)

    def test_axis_angle_normalises_axis(self):
        assert_points_approx(axis_angle_matrix([0, 0, 5], math.pi), axis_angle_matrix([0, 0, 1], math.pi))

    def test_zero_axis_is_identity(self):
        assert_points_approx(axis_angle_matrix([0, 0, 0], 1.0), np.eye(4))


class TestSceneNode(unittest.TestCase):
    def test_walk_composes_world_matrices(self):
        parent_matrix = np.eye(4)
        parent_matrix[:3, 3] = (1, 0, 0)
        child_matrix = np.eye(4)
        child_matrix[:3, 3] = (0, 2, 0)

        root = SceneNode("Root", parent_matrix)
        child = root.add_child(SceneNode("Child", child_matrix))
        worlds = {node.name: world for node, world in root.walk()}
        self.assertIs(root.children[0], child)
        assert_points_approx(worlds["Child"][:3, 3], [1, 2, 0])

    def test_iter_meshes_depth_first(self):
        root = SceneNode("Root", meshes=[MeshData("a", np.zeros((3, 3)))])
        child = root.add_child(SceneNode("Child", meshes=[MeshData("b", np.zeros((3, 3)))]))
        child.add_child(SceneNode("Leaf", meshes=[MeshData("c", np.zeros((3, 3)))]))
        root.add_child(SceneNode("Other", meshes=[MeshData("d", np.zeros((3, 3)))]))
        self.assertEqual([m.name for m in root.iter_meshes()], ["a", "b", "c", "d"])


class TestMeshData(unittest.TestCase):
    def test_counts(self):
        mesh = MeshData("m", np.zeros((6, 3)), indices=np.arange(6))
        self.assertEqual(mesh.triangle_count, 2)
        self.assertEqual(mesh.segment_count, 0)
        lines = MeshData("l", np.zeros((6, 3)), primitive="lines")
        self.assertEqual(lines.segment_count, 3)
        self.assertEqual(lines.triangle_count, 0)

    def test_finite_vertex_count(self):
        vertices = np.array([[0, 0, 0], [np.nan, 0, 0], [1, np.inf, 0], [1, 1, 1]], dtype=np.float32)
        self.assertEqual(MeshData("m", vertices).finite_vertex_count(), 2)
        self.assertEqual(MeshData("empty", np.zeros((0, 3))).finite_vertex_count(), 0)


class TestBoundingBox(unittest.TestCase):
    def test_from_points_ignores_non_finite(self):
        box = BoundingBox.from_points([[0, 0, 0], [np.nan, 5, 5], [2, 4, -1]])
        assert_points_approx(box.min, [0, 0, -1])
        assert_points_approx(box.max, [2, 4, 0])
        assert_points_approx(box.center, [1, 2, -0.5])
        assert_points_approx(box.size, [2, 4, 1])

    def test_empty(self):
        box = BoundingBox.from_points(np.zeros((0, 3)))
        self.assertTrue(box.is_empty)
        self.assertIsNone(box.to_dict())
        self.assertIs(box.union(BoundingBox([0, 0, 0], [1, 1, 1])).is_empty, False)


def test_texture_from_png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 2), (255, 0, 0)).save(buffer, format="PNG")
    texture = TextureData.from_bytes("red.png", buffer.getvalue())
    assert (texture.width, texture.height) == (4, 2)
    assert texture.mime_type == "image/png"


def test_texture_from_unreadable_bytes_keeps_declared_mime():
    texture = TextureData.from_bytes("broken.png", b"not an image", "image/png")
    assert (texture.width, texture.height) == (0, 0)
    assert texture.mime_type == "image/png"
    assert TextureData.from_bytes("x", b"???").mime_type == "application/octet-stream"


def test_box_mesh():
    box = box_mesh(2.0, 4.0, 6.0)
    assert box.vertex_count == 8
    assert box.triangle_count == 12
    assert box.uvs.shape == (8, 2)
    assert_points_approx(box.vertices.min(axis=0), [-1, -2, -3])
    assert_points_approx(box.vertices.max(axis=0), [1, 2, 3])


def test_round_primitives_fit_their_size():
    sphere = sphere_mesh(2.0, 8, 6)
    assert np.allclose(np.linalg.norm(sphere.vertices, axis=1), 2.0, atol=1e-5)
    assert sphere.triangle_count == 2 * 8 * 6

    cylinder = cylinder_mesh(1.0, 3.0, 12)
    assert_points_approx(cylinder.vertices[:, 1].min(), -1.5)
    assert_points_approx(cylinder.vertices[:, 1].max(), 1.5)
    assert cylinder.triangle_count == 4 * 12

    cone = cone_mesh(1.0, 2.0, 10)
    assert_points_approx(cone.vertices[0], [0, 1, 0])
    assert cone.triangle_count == 2 * 10
    assert int(cone.indices.max()) == cone.vertex_count - 1

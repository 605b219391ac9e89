"""Primitive mesh shapes: Box, Sphere, Cylinder, Cone. All Y-up, centred on the origin."""

import numpy as np

from modelview.scene import MeshData


def box_mesh(x: float = 1.0, y: float = None, z: float = None, name: str = "Box") -> MeshData:
    if y is None:
        y = x
    if z is None:
        z = x

    s_x = x * 0.5
    s_y = y * 0.5
    s_z = z * 0.5
    vertices = np.array(
        [
            [-s_x, -s_y, -s_z],
            [s_x, -s_y, -s_z],
            [s_x, s_y, -s_z],
            [-s_x, s_y, -s_z],
            [-s_x, -s_y, s_z],
            [s_x, -s_y, s_z],
            [s_x, s_y, s_z],
            [-s_x, s_y, s_z],
        ],
        dtype=np.float32,
    )
    triangles = np.array(
        [
            [1, 0, 2],
            [2, 0, 3],
            [4, 5, 7],
            [5, 6, 7],
            [0, 1, 4],
            [1, 5, 4],
            [2, 3, 6],
            [3, 7, 6],
            [3, 0, 4],
            [7, 3, 4],
            [1, 2, 5],
            [2, 6, 5],
        ],
        dtype=np.uint32,
    )
    uvs = np.array([
        [0.0, 0.0],
        [1.0, 0.0],
        [1.0, 1.0],
        [0.0, 1.0],
        [0.0, 0.0],
        [1.0, 0.0],
        [1.0, 1.0],
        [0.0, 1.0],
    ], dtype=np.float32)
    return MeshData(name, vertices, indices=triangles, uvs=uvs)


def sphere_mesh(radius: float = 1.0, n_meridians: int = 16, n_parallels: int = 16, name: str = "Sphere") -> MeshData:
    rings = n_parallels
    segments = n_meridians

    vertices = []
    triangles = []
    for r in range(rings + 1):
        theta = r * np.pi / rings
        sin_theta = np.sin(theta)
        cos_theta = np.cos(theta)
        for s in range(segments):
            phi = s * 2 * np.pi / segments
            x = radius * sin_theta * np.cos(phi)
            z = radius * sin_theta * np.sin(phi)
            y = radius * cos_theta
            vertices.append([x, y, z])
    for r in range(rings):
        for s in range(segments):
            next_r = r + 1
            next_s = (s + 1) % segments
            triangles.append([r * segments + s, next_r * segments + next_s, next_r * segments + s])
            triangles.append([r * segments + s, r * segments + next_s, next_r * segments + next_s])
    return MeshData(name, np.array(vertices, dtype=np.float32), indices=np.array(triangles, dtype=np.uint32))


def cylinder_mesh(radius: float = 1.0, height: float = 2.0, segments: int = 16, name: str = "Cylinder") -> MeshData:
    vertices = []
    triangles = []
    half_height = height * 0.5
    for y in [-half_height, half_height]:
        for s in range(segments):
            theta = s * 2 * np.pi / segments
            x = radius * np.cos(theta)
            z = radius * np.sin(theta)
            vertices.append([x, y, z])
    for s in range(segments):
        next_s = (s + 1) % segments
        bottom0 = s
        bottom1 = next_s
        top0 = s + segments
        top1 = next_s + segments
        triangles.append([bottom0, top0, bottom1])
        triangles.append([bottom1, top0, top1])

    # Cap centres
    bottom_center_idx = len(vertices)
    vertices.append([0.0, -half_height, 0.0])
    top_center_idx = len(vertices)
    vertices.append([0.0, half_height, 0.0])
    for s in range(segments):
        next_s = (s + 1) % segments
        triangles.append([next_s, bottom_center_idx, s])
        triangles.append([s + segments, top_center_idx, next_s + segments])

    return MeshData(name, np.array(vertices, dtype=np.float32), indices=np.array(triangles, dtype=np.uint32))


def cone_mesh(radius: float = 1.0, height: float = 2.0, segments: int = 16, name: str = "Cone") -> MeshData:
    vertices = []
    triangles = []
    half_height = height * 0.5
    vertices.append([0.0, half_height, 0.0])
    for s in range(segments):
        theta = s * 2 * np.pi / segments
        x = radius * np.cos(theta)
        z = radius * np.sin(theta)
        vertices.append([x, -half_height, z])
    base_center_idx = len(vertices)
    for s in range(segments):
        next_s = (s + 1) % segments
        base0 = s + 1
        base1 = next_s + 1
        triangles.append([0, base1, base0])
        triangles.append([base0, base1, base_center_idx])
    vertices.append([0.0, -half_height, 0.0])
    return MeshData(name, np.array(vertices, dtype=np.float32), indices=np.array(triangles, dtype=np.uint32))

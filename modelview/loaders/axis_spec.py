# modelview/loaders/axis_spec.py
"""Axis convention mapping used to bring models into the Y-up frame."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Optional

import numpy as np

from modelview import log


_AXIS_INDEX = {"x": 0, "y": 1, "z": 2, "-x": 0, "-y": 1, "-z": 2}
_AXIS_SIGN = {"x": 1, "y": 1, "z": 1, "-x": -1, "-y": -1, "-z": -1}


@dataclass
class AxisSpec:
    """
    Maps source axes onto the renderer frame (X right, Y up, Z towards viewer).

    Each field names the source axis that lands on the target axis.
    Values: "x", "y", "z", "-x", "-y", "-z".
    """

    axis_x: str = "x"
    axis_y: str = "y"
    axis_z: str = "z"

    # Scale factor applied on top of the axis mapping
    scale: float = 1.0

    Y_UP: ClassVar["AxisSpec"]
    Z_UP: ClassVar["AxisSpec"]
    X_UP: ClassVar["AxisSpec"]

    @classmethod
    def from_dict(cls, data: dict) -> "AxisSpec":
        return cls(
            axis_x=data.get("axis_x", "x"),
            axis_y=data.get("axis_y", "y"),
            axis_z=data.get("axis_z", "z"),
            scale=data.get("scale", 1.0),
        )

    def to_dict(self) -> dict:
        return {
            "axis_x": self.axis_x,
            "axis_y": self.axis_y,
            "axis_z": self.axis_z,
            "scale": self.scale,
        }

    @classmethod
    def load(cls, spec_path: str | Path) -> "AxisSpec":
        """Load spec from file."""
        path = Path(spec_path)
        if not path.exists():
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            log.warn(e, f"Ignoring unreadable axis spec {path}")
            return cls()

    def save(self, spec_path: str | Path) -> None:
        """Save spec to file."""
        with open(Path(spec_path), "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @property
    def is_identity(self) -> bool:
        return (self.axis_x, self.axis_y, self.axis_z, self.scale) == ("x", "y", "z", 1.0)

    def matrix(self) -> np.ndarray:
        """4x4 matrix performing the mapping, suitable for a root node."""
        m = np.zeros((4, 4), dtype=np.float64)
        for row, name in enumerate((self.axis_x, self.axis_y, self.axis_z)):
            m[row, _AXIS_INDEX.get(name, row)] = _AXIS_SIGN.get(name, 1) * self.scale
        m[3, 3] = 1.0
        return m

    def apply_to_vertices(self, vertices: np.ndarray) -> np.ndarray:
        """
        Apply axis mapping and scale to vertices.

        Args:
            vertices: (N, 3) array of vertices

        Returns:
            Transformed vertices (N, 3)
        """
        if vertices is None or len(vertices) == 0:
            return vertices
        return (np.asarray(vertices, dtype=np.float64) @ self.matrix()[:3, :3].T).astype(np.float32)

    def apply_to_normals(self, normals: np.ndarray) -> np.ndarray:
        """Apply axis reordering to normals (no scale)."""
        if normals is None or len(normals) == 0:
            return normals
        rot = self.matrix()[:3, :3] / (self.scale or 1.0)
        return (np.asarray(normals, dtype=np.float64) @ rot.T).astype(np.float32)


AxisSpec.Y_UP = AxisSpec()
# Z-up source: -90 degrees about X, (x, y, z) -> (x, z, -y)
AxisSpec.Z_UP = AxisSpec(axis_x="x", axis_y="z", axis_z="-y")
# X-up source: (x, y, z) -> (-y, x, z)
AxisSpec.X_UP = AxisSpec(axis_x="-y", axis_y="x", axis_z="z")

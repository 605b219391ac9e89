# modelview/loaders/decode_spec.py
"""Decode settings - tunables for the pipeline and individual decoders."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from modelview import log
from modelview.loaders.axis_spec import AxisSpec


@dataclass
class GCodeSpec:
    """Toolpath extraction settings."""

    # "gradient" (hue ramp over the whole toolpath) or "single"
    color_mode: str = "gradient"
    single_color: str = "#ff5722"
    # Minimum extrusion delta for a move to count as printing
    extrusion_epsilon: float = 0.005
    # Extruding moves longer than this in XY are treated as travel
    long_travel_cutoff: float = 50.0
    # Binary dialect detection
    binary_sample_size: int = 1024
    binary_nonprintable_ratio: float = 0.3
    binary_min_run_length: int = 10

    @classmethod
    def from_dict(cls, data: dict) -> "GCodeSpec":
        default = cls()
        return cls(**{name: data.get(name, getattr(default, name)) for name in default.__dict__})

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class DecodeSpec:
    """
    Decode settings.

    Stored as .meta file next to the model (e.g., part.stl.meta).
    """

    # Inputs above this size are rejected before parsing
    max_file_size: int = 500 * 1024 * 1024
    gcode: GCodeSpec = field(default_factory=GCodeSpec)
    # Replaces the decoder's own up-axis correction when set
    axis_override: Optional[AxisSpec] = None

    @classmethod
    def from_dict(cls, data: dict) -> "DecodeSpec":
        axis = data.get("axis_override")
        return cls(
            max_file_size=data.get("max_file_size", 500 * 1024 * 1024),
            gcode=GCodeSpec.from_dict(data.get("gcode", {})),
            axis_override=AxisSpec.from_dict(axis) if axis else None,
        )

    def to_dict(self) -> dict:
        return {
            "max_file_size": self.max_file_size,
            "gcode": self.gcode.to_dict(),
            "axis_override": self.axis_override.to_dict() if self.axis_override else None,
        }

    @classmethod
    def load(cls, spec_path: str | Path) -> "DecodeSpec":
        """Load spec from file."""
        path = Path(spec_path)
        if not path.exists():
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            log.warn(e, f"Ignoring unreadable decode spec {path}")
            return cls()

    @classmethod
    def for_model_file(cls, model_path: str | Path) -> "DecodeSpec":
        """Load spec for a model file (looks for model_path.meta or .spec)."""
        meta_path = Path(str(model_path) + ".meta")
        if meta_path.exists():
            return cls.load(meta_path)
        # Fallback to .spec (old format)
        spec_path = Path(str(model_path) + ".spec")
        return cls.load(spec_path)

    def save(self, spec_path: str | Path, preserve_existing: bool = False) -> None:
        """Save spec to file.

        Args:
            spec_path: Path to save the spec file.
            preserve_existing: If True, keep unknown fields already in the file.
        """
        path = Path(spec_path)

        existing_data = {}
        if preserve_existing and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    existing_data = json.load(f)
            except (OSError, ValueError) as e:
                log.warn(e, f"Overwriting unreadable spec {path}")

        data = existing_data.copy()
        data.update(self.to_dict())
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def save_for_model(self, model_path: str | Path) -> None:
        """Save spec next to model file (.meta format), dropping an old .spec."""
        self.save(Path(str(model_path) + ".meta"), preserve_existing=True)
        old_spec = Path(str(model_path) + ".spec")
        if old_spec.exists():
            os.remove(old_spec)

# modelview/loaders/base.py
"""Shared decoder lifecycle and post-processing."""

from __future__ import annotations

import math
import struct
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from modelview import log
from modelview.assets import DecodeContext
from modelview.errors import DecodeError, ErrorKind, SandboxViolationError
from modelview.gateway import FetchStatus, decode_data_uri
from modelview.loaders.axis_spec import AxisSpec
from modelview.packager import package, world_bounding_box
from modelview.resolver import ResolvedResource, ResourceKind, resolve
from modelview.scene import NormalizedModel, ParsedScene

UP_AXIS_SPECS = {"Y": AxisSpec.Y_UP, "Z": AxisSpec.Z_UP, "X": AxisSpec.X_UP}


class BaseDecoder(ABC):
    """
    One subclass per format. Subclasses implement parse(); decode() wraps it
    with input checks and the post-parse rules every format shares:

    1. at least one finite vertex, else NO_GEOMETRY_FOUND
    2. Z-up and X-up sources are rotated into the Y-up frame on the root node
    3. materials forced visible and opaque unless transparency is explicit
    4. world bounding box computed and the model recentred on its centre
    """

    name = "base"
    decoder_id = None

    @abstractmethod
    async def parse(self, data: bytes, context: DecodeContext) -> ParsedScene:
        ...

    async def decode(self, data: bytes, context: DecodeContext) -> NormalizedModel:
        """Parse, normalize and package. Fatal problems raise DecodeError."""
        if not data:
            raise DecodeError(ErrorKind.EMPTY_OR_CORRUPT_INPUT, "File is empty", decoder=self.name)
        if len(data) > context.spec.max_file_size:
            raise DecodeError(
                ErrorKind.EMPTY_OR_CORRUPT_INPUT,
                f"File is {len(data)} bytes, limit is {context.spec.max_file_size}",
                decoder=self.name,
            )

        try:
            parsed = await self.parse(data, context)
        except DecodeError as e:
            if e.decoder is None:
                e.decoder = self.name
            raise
        except (ValueError, KeyError, IndexError, TypeError, UnicodeDecodeError, EOFError,
                OverflowError, ArithmeticError, AttributeError, struct.error) as e:
            log.warn(e, f"{self.name} parser failed")
            raise DecodeError(
                ErrorKind.EMPTY_OR_CORRUPT_INPUT,
                f"Could not parse {context.primary_asset.name}: {type(e).__name__}: {e}",
                decoder=self.name,
            ) from e

        self.finalize(parsed, context)
        return package(parsed, context, self.decoder_id)

    # ---------- POST-PROCESSING ----------

    def finalize(self, parsed: ParsedScene, context: DecodeContext) -> None:
        self._require_geometry(parsed)
        self._normalize_up_axis(parsed, context)
        self._normalize_materials(parsed)
        self._recenter(parsed)

    def _require_geometry(self, parsed: ParsedScene) -> None:
        if not any(mesh.finite_vertex_count() > 0 for mesh in parsed.root.iter_meshes()):
            raise DecodeError(ErrorKind.NO_GEOMETRY_FOUND, "No finite vertices found", decoder=self.name)

    def _normalize_up_axis(self, parsed: ParsedScene, context: DecodeContext) -> None:
        axis = context.spec.axis_override
        if axis is None:
            axis = UP_AXIS_SPECS.get(parsed.up_axis, AxisSpec.Y_UP)
        if axis.is_identity:
            return
        parsed.root.transform = axis.matrix() @ parsed.root.transform

    def _normalize_materials(self, parsed: ParsedScene) -> None:
        for material in parsed.materials:
            material.visible = True
            if not material.explicit_transparency:
                material.opacity = 1.0
                material.transparent = False
                material.base_color[3] = 1.0
                continue
            opacity = material.opacity
            if not math.isfinite(opacity) or opacity <= 0.0 or opacity > 1.0:
                log.debug(f"Material {material.name!r}: clamping alpha {opacity} to opaque")
                material.opacity = 1.0
                material.transparent = False
                material.base_color[3] = 1.0
            else:
                material.transparent = opacity < 1.0
                material.base_color[3] = opacity

    def _recenter(self, parsed: ParsedScene) -> None:
        box = world_bounding_box(parsed.root)
        if box.is_empty:
            return
        offset = np.eye(4)
        offset[:3, 3] = -box.center
        parsed.root.transform = offset @ parsed.root.transform

    # ---------- DEPENDENCIES ----------

    async def load_dependency(self, context: DecodeContext, declared_name: str,
                              kind: ResourceKind = ResourceKind.TEXTURE) -> ResolvedResource:
        """Resolve a sibling by name and fetch it through the gateway. Misses are recorded, not raised."""
        resolved = resolve(declared_name, context.sibling_assets, kind)
        if not resolved.found:
            context.diagnostics.record_missing(declared_name, f"{kind.value} not supplied")
            return resolved

        gateway = context.gateway
        if gateway is None or not gateway.installed:
            return resolved

        handle = gateway.create_handle(resolved.blob)
        try:
            result = await gateway.fetch(handle)
        except SandboxViolationError as e:
            context.diagnostics.record_violation(handle, str(e))
            resolved.blob = None
            return resolved
        finally:
            gateway.revoke(handle)

        if result.status is not FetchStatus.READY:
            context.diagnostics.record_missing(declared_name, result.error or "fetch failed")
            resolved.blob = None
            return resolved
        resolved.blob = result.data
        resolved.addressing_mode = result.addressing_mode
        return resolved

    async def fetch_inline(self, context: DecodeContext, uri: str) -> Optional[bytes]:
        """Bytes of a data: URI via the gateway; None (with a diagnostic) on failure."""
        gateway = context.gateway
        try:
            if gateway is None:
                return decode_data_uri(uri)[0]
            result = await gateway.fetch(uri)
        except SandboxViolationError as e:
            context.diagnostics.record_violation(uri, str(e))
            return None
        except ValueError as e:
            context.diagnostics.warn(f"Malformed inline resource: {e}")
            return None
        if not result.ready:
            context.diagnostics.warn(f"Inline resource unavailable: {result.error}")
            return None
        return result.data


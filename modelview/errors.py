"""Error taxonomy shared by the router, decoders and the resource gateway."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Tuple


class ErrorKind(Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    EMPTY_OR_CORRUPT_INPUT = "empty_or_corrupt_input"
    NO_GEOMETRY_FOUND = "no_geometry_found"
    VERSION_INCOMPATIBLE = "version_incompatible"
    STRUCTURAL_INCOMPATIBILITY = "structural_incompatibility"
    MISSING_DEPENDENCY = "missing_dependency"
    SANDBOX_VIOLATION = "sandbox_violation"

    @property
    def fatal(self) -> bool:
        """Fatal kinds abort the decode; the others end up in diagnostics."""
        return self not in (ErrorKind.MISSING_DEPENDENCY, ErrorKind.SANDBOX_VIOLATION)


class RemediationHint(Enum):
    """Stable identifiers; the presentation layer owns the wording."""

    CHECK_FILE_EXTENSION = "check_file_extension"
    CONVERT_TO_GLTF = "convert_to_gltf"
    REEXPORT_FROM_SOURCE = "reexport_from_source"
    REEXPORT_FBX_2013 = "reexport_fbx_2013"
    EXPORT_PLAIN_GCODE = "export_plain_gcode"
    ENABLE_CODEC = "enable_codec"
    UPGRADE_GLTF = "upgrade_gltf"
    THREEMF_MISSING_MODEL = "threemf_missing_model"
    THREEMF_NONSTANDARD_PATH = "threemf_nonstandard_path"
    THREEMF_MALFORMED_XML = "threemf_malformed_xml"
    REPAIR_VRML_SYNTAX = "repair_vrml_syntax"
    UPLOAD_MISSING_DEPENDENCY = "upload_missing_dependency"


class DecodeError(Exception):
    """Fatal decode failure with a kind and remediation hints."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        hints: Iterable[RemediationHint] = (),
        decoder: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.hints: Tuple[RemediationHint, ...] = tuple(hints)
        self.decoder = decoder
        self.details = dict(details or {})

    def __str__(self) -> str:
        prefix = f"[{self.decoder}] " if self.decoder else ""
        return f"{prefix}{self.kind.value}: {self.message}"


class SandboxViolationError(Exception):
    """A resource address was refused by the sandbox policy."""

    def __init__(self, address: str, reason: str = ""):
        super().__init__(f"Sandbox refused {address[:64]!r}: {reason}" if reason else f"Sandbox refused {address[:64]!r}")
        self.address = address
        self.reason = reason


class GatewayBusyError(RuntimeError):
    """Another gateway session is already installed."""

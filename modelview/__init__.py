"""
modelview - decode 3D model files into renderer-ready scenes.

Main modules:
- router - picks a decoder from the file name and leading bytes
- loaders - one decoder per format (glTF, OBJ, STL, PLY, FBX, 3MF, DAE, VRML, 3DS, X3D, G-code)
- resolver - fuzzy matching of declared resource names to supplied files
- gateway - sandboxed fetching of resources by handle
- packager - final model and diagnostics reports
"""

from .errors import DecodeError, ErrorKind, RemediationHint, SandboxViolationError
from .assets import Capability, DecodeContext, RawAsset, SandboxPolicy
from .scene import BoundingBox, Diagnostics, MaterialData, MeshData, NormalizedModel, SceneNode
from .router import DecoderId, route
from .resolver import resolve
from .gateway import ResourceGateway
from .packager import diagnostics_report, error_report
from .pipeline import decode, decode_sync

__version__ = '0.1.0'

__all__ = [
    # Errors
    'DecodeError',
    'ErrorKind',
    'RemediationHint',
    'SandboxViolationError',
    # Inputs
    'Capability',
    'DecodeContext',
    'RawAsset',
    'SandboxPolicy',
    # Scene
    'BoundingBox',
    'Diagnostics',
    'MaterialData',
    'MeshData',
    'NormalizedModel',
    'SceneNode',
    # Pipeline
    'DecoderId',
    'route',
    'resolve',
    'ResourceGateway',
    'decode',
    'decode_sync',
    'diagnostics_report',
    'error_report',
]

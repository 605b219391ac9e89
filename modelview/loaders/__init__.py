"""Format decoders, keyed by router decoder id."""

from __future__ import annotations

import importlib

_DECODERS = {
    "GLTF": ("modelview.loaders.gltf_loader", "GLTFDecoder"),
    "OBJ": ("modelview.loaders.obj_loader", "OBJDecoder"),
    "STL": ("modelview.loaders.stl_loader", "STLDecoder"),
    "PLY": ("modelview.loaders.ply_loader", "PLYDecoder"),
    "FBX": ("modelview.loaders.fbx_loader", "FBXDecoder"),
    "THREE_MF": ("modelview.loaders.threemf_loader", "ThreeMFDecoder"),
    "DAE": ("modelview.loaders.dae_loader", "DAEDecoder"),
    "VRML": ("modelview.loaders.vrml_loader", "VRMLDecoder"),
    "TDS": ("modelview.loaders.tds_loader", "TDSDecoder"),
    "X3D": ("modelview.loaders.x3d_loader", "X3DDecoder"),
    "GCODE": ("modelview.loaders.gcode_loader", "GCodeDecoder"),
}


def decoder_class(decoder_id):
    """Decoder class for a DecoderId (or its name). KeyError when none is registered."""
    key = getattr(decoder_id, "name", decoder_id)
    module_name, class_name = _DECODERS[key]
    return getattr(importlib.import_module(module_name), class_name)


def create_decoder(decoder_id):
    return decoder_class(decoder_id)()

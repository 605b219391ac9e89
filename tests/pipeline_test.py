import asyncio
import io
import logging

import numpy as np
import pytest
from PIL import Image

from modelview import (
    DecodeError,
    DecoderId,
    ErrorKind,
    RawAsset,
    RemediationHint,
    ResourceGateway,
    SandboxPolicy,
    decode,
    decode_sync,
    log,
)
from modelview.errors import GatewayBusyError
from modelview.loaders import create_decoder
from modelview.loaders.decode_spec import DecodeSpec

STL_TEXT = b"""solid tri
facet normal 0 0 1
outer loop
vertex 4 4 4
vertex 6 4 4
vertex 4 4 8
endloop
endfacet
endsolid tri
"""

OBJ_TEXT = b"mtllib box.mtl\nv 1 1 1\nv 3 1 1\nv 3 3 1\nusemtl wood\nf 1 2 3\n"
MTL_TEXT = b"newmtl wood\nKd 0.5 0.3 0.1\nmap_Kd wood.png\n"

PLY_TEXT = b"""ply
format ascii 1.0
element vertex 3
property float x
property float y
property float z
element face 1
property list uchar int vertex_indices
end_header
5 5 5
7 5 5
5 9 5
3 0 1 2
"""

GCODE_TEXT = b"G1 Z0.2\nG1 X50 Y50 E1\nG1 X60 Y50 E2\n"


def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (120, 80, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


def obj_bundle():
    return RawAsset(OBJ_TEXT, "box.obj"), [RawAsset(MTL_TEXT, "box.mtl"), RawAsset(png_bytes(), "wood.png")]


def test_unsupported_format():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"hello", "notes.txt"))
    error = info.value
    assert error.kind is ErrorKind.UNSUPPORTED_FORMAT
    assert list(error.hints) == [RemediationHint.CHECK_FILE_EXTENSION, RemediationHint.CONVERT_TO_GLTF]
    assert error.kind.fatal


def test_file_size_limit():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(STL_TEXT, "tri.stl"), spec=DecodeSpec(max_file_size=16))
    assert info.value.kind is ErrorKind.EMPTY_OR_CORRUPT_INPUT
    assert "limit" in info.value.message


@pytest.mark.parametrize("asset, decoder_id", [
    (RawAsset(STL_TEXT, "tri.stl"), DecoderId.STL),
    (RawAsset(OBJ_TEXT, "box.obj"), DecoderId.OBJ),
    (RawAsset(PLY_TEXT, "tri.ply"), DecoderId.PLY),
    (RawAsset(GCODE_TEXT, "print.gcode"), DecoderId.GCODE),
])
def test_models_are_recentred(asset, decoder_id):
    model = decode_sync(asset)
    assert model.decoder_id is decoder_id
    assert model.source_name == asset.name
    np.testing.assert_allclose(model.bounding_box.center, [0, 0, 0], atol=1e-5)
    assert all(np.isfinite(model.bounding_box.size))


def test_create_decoder_covers_every_format():
    for decoder_id in DecoderId:
        if decoder_id is DecoderId.UNSUPPORTED:
            continue
        assert create_decoder(decoder_id).decoder_id is decoder_id


def test_sniffing_without_extension():
    model = decode_sync(RawAsset(STL_TEXT, "upload"))
    assert model.decoder_id is DecoderId.STL


def test_restricted_policy_loads_dependencies():
    primary, siblings = obj_bundle()
    gateway = ResourceGateway(SandboxPolicy.RESTRICTED)
    model = decode_sync(primary, siblings, sandbox_policy=SandboxPolicy.RESTRICTED, gateway=gateway)

    material = model.materials[0]
    assert material.name == "wood"
    assert (material.texture.width, material.texture.height) == (4, 4)
    assert model.diagnostics.is_clean
    assert gateway.handle_count == 0
    assert not gateway.installed


def test_gateway_is_reusable_between_calls():
    primary, siblings = obj_bundle()
    gateway = ResourceGateway(SandboxPolicy.RESTRICTED)
    for _ in range(2):
        model = decode_sync(primary, siblings, sandbox_policy=SandboxPolicy.RESTRICTED, gateway=gateway)
        assert model.materials[0].texture is not None


def test_overlapping_calls_on_one_gateway():
    primary, siblings = obj_bundle()
    gateway = ResourceGateway(SandboxPolicy.RESTRICTED)

    async def run_both():
        calls = [decode(primary, siblings, sandbox_policy=SandboxPolicy.RESTRICTED, gateway=gateway)
                 for _ in range(2)]
        return await asyncio.gather(*calls, return_exceptions=True)

    results = asyncio.run(run_both())
    busy = [r for r in results if isinstance(r, GatewayBusyError)]
    models = [r for r in results if not isinstance(r, BaseException)]
    assert len(busy) == 1
    assert len(models) == 1
    assert not gateway.installed


def test_concurrent_calls_with_own_gateways():
    primary, siblings = obj_bundle()

    async def run_both():
        return await asyncio.gather(*[
            decode(primary, siblings, sandbox_policy=SandboxPolicy.RESTRICTED) for _ in range(3)
        ])

    models = asyncio.run(run_both())
    assert all(m.materials[0].texture is not None for m in models)


def test_log_callback_sees_summary():
    received = []
    log.set_callback(lambda level, msg: received.append((level, msg)))
    try:
        decode_sync(RawAsset(STL_TEXT, "tri.stl"))
    finally:
        log.set_callback(None)
    assert any(level == logging.INFO and msg.startswith("Decoded tri.stl") for level, msg in received)

"""Decode entry point: route, build the context, run the decoder in a gateway session."""

from __future__ import annotations

import asyncio
from typing import Iterable, Mapping, Optional

from modelview import log
from modelview.assets import Capability, Codec, DecodeContext, RawAsset, SandboxPolicy
from modelview.errors import DecodeError, ErrorKind, RemediationHint
from modelview.gateway import ResourceGateway
from modelview.loaders import create_decoder
from modelview.loaders.decode_spec import DecodeSpec
from modelview.router import DecoderId, extension_of, route
from modelview.scene import NormalizedModel

SNIFF_LENGTH = 4096


def build_context(primary: RawAsset, siblings: Iterable[RawAsset] = (),
                  capabilities: Iterable[Capability] = (),
                  sandbox_policy: SandboxPolicy = SandboxPolicy.OPEN,
                  spec: Optional[DecodeSpec] = None,
                  codecs: Optional[Mapping[Capability, Codec]] = None,
                  gateway: Optional[ResourceGateway] = None) -> DecodeContext:
    return DecodeContext(
        primary_asset=primary,
        sibling_assets=tuple(siblings),
        capabilities=frozenset(capabilities),
        sandbox_policy=sandbox_policy,
        spec=spec or DecodeSpec(),
        codecs=dict(codecs or {}),
        gateway=gateway if gateway is not None else ResourceGateway(sandbox_policy),
    )


async def decode(primary: RawAsset, siblings: Iterable[RawAsset] = (),
                 capabilities: Iterable[Capability] = (),
                 sandbox_policy: SandboxPolicy = SandboxPolicy.OPEN,
                 spec: Optional[DecodeSpec] = None,
                 codecs: Optional[Mapping[Capability, Codec]] = None,
                 gateway: Optional[ResourceGateway] = None) -> NormalizedModel:
    """Decode one model. Raises DecodeError for fatal problems; never retries."""
    decoder_id = route(primary.name, primary.data[:SNIFF_LENGTH])
    if decoder_id is DecoderId.UNSUPPORTED:
        raise DecodeError(
            ErrorKind.UNSUPPORTED_FORMAT,
            f"Unsupported format: {extension_of(primary.name) or 'no extension'}",
            hints=[RemediationHint.CHECK_FILE_EXTENSION, RemediationHint.CONVERT_TO_GLTF],
        )

    context = build_context(primary, siblings, capabilities, sandbox_policy, spec, codecs, gateway)
    decoder = create_decoder(decoder_id)
    log.debug(f"Routing {primary.name} to {decoder.name}")

    async with context.gateway.session():
        return await decoder.decode(primary.data, context)


def decode_sync(primary: RawAsset, siblings: Iterable[RawAsset] = (), **kwargs) -> NormalizedModel:
    """Blocking wrapper around decode() for callers without an event loop."""
    return asyncio.run(decode(primary, siblings, **kwargs))

"""Input assets and the per-call decode context."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, FrozenSet, Optional, Tuple

from modelview.loaders.decode_spec import DecodeSpec
from modelview.scene import Diagnostics

if TYPE_CHECKING:
    from modelview.gateway import ResourceGateway


class SandboxPolicy(Enum):
    # Every scheme allowed
    OPEN = "open"
    # Only data: addresses may be fetched in-process
    RESTRICTED = "restricted"


class Capability(Enum):
    DRACO = "draco"
    MESHOPT = "meshopt"
    KTX2 = "ktx2"


# A codec receives the compressed bytes plus the extension dict and returns decoded bytes
# (meshopt) or a dict of attribute arrays (Draco).
Codec = Callable[..., Awaitable[object]]


def basename(name: str) -> str:
    return posixpath.basename(name.replace("\\", "/"))


@dataclass(frozen=True)
class RawAsset:
    """Caller-owned file contents. Decoders only borrow it."""

    data: bytes
    name: str
    declared_type: Optional[str] = None

    @property
    def basename(self) -> str:
        return basename(self.name)

    @property
    def extension(self) -> str:
        base = self.basename
        if "." not in base:
            return ""
        return base.rsplit(".", 1)[1].lower()

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class DecodeContext:
    """Everything one decode call may touch. Built per call, never shared."""

    primary_asset: RawAsset
    sibling_assets: Tuple[RawAsset, ...] = ()
    capabilities: FrozenSet[Capability] = frozenset()
    sandbox_policy: SandboxPolicy = SandboxPolicy.OPEN
    spec: DecodeSpec = field(default_factory=DecodeSpec)
    codecs: Dict[Capability, Codec] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    gateway: Optional["ResourceGateway"] = None

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def codec(self, capability: Capability) -> Optional[Codec]:
        """Codec callable when the capability is enabled and one is registered."""
        if capability not in self.capabilities:
            return None
        return self.codecs.get(capability)

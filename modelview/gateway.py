"""Sandboxed resource gateway.

Decoders fetch dependencies through handles. Under a restricted sandbox
`blob:` handles never reach the boundary; they are rewritten to inline
`data:` URIs. Conversion starts as soon as a handle is created so that
synchronous call sites usually find it ready:

    UNCONVERTED -> CONVERTING -> CACHED | FAILED

`fetch_sync` answers READY, PENDING or FAILED and never passes a disallowed
handle through. Interception only exists inside `async with gateway.session()`.
"""

from __future__ import annotations

import asyncio
import base64
import io
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import unquote_to_bytes

from PIL import Image, UnidentifiedImageError

from modelview import log
from modelview.assets import SandboxPolicy
from modelview.errors import GatewayBusyError, SandboxViolationError
from modelview.resolver import AddressingMode
from modelview.scene import PIL_FORMAT_MIME

HANDLE_PREFIX = "blob:modelview/"
DEFAULT_MIME = "application/octet-stream"

Fetcher = Callable[[str], Awaitable[bytes]]


class ConversionState(Enum):
    UNCONVERTED = "unconverted"
    CONVERTING = "converting"
    CACHED = "cached"
    FAILED = "failed"


class FetchStatus(Enum):
    READY = "ready"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class FetchResult:
    status: FetchStatus
    address: str
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    addressing_mode: AddressingMode = AddressingMode.DIRECT
    error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status is FetchStatus.READY


# ---------- DATA URIS ----------

def sniff_mime(blob: bytes) -> str:
    try:
        with Image.open(io.BytesIO(blob)) as img:
            return PIL_FORMAT_MIME.get(img.format or "", DEFAULT_MIME)
    except (UnidentifiedImageError, OSError, ValueError):
        return DEFAULT_MIME


def encode_data_uri(blob: bytes, mime_type: Optional[str] = None) -> str:
    mime_type = mime_type or sniff_mime(blob)
    return f"data:{mime_type};base64,{base64.b64encode(blob).decode('ascii')}"


def decode_data_uri(uri: str) -> Tuple[bytes, str]:
    """(payload, mime type) of a data: URI. ValueError when malformed."""
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("Not a data URI")
    header, payload = uri[5:].split(",", 1)
    params = header.split(";")
    mime_type = params[0] or "text/plain"
    if "base64" in params[1:]:
        return base64.b64decode(payload, validate=False), mime_type
    return unquote_to_bytes(payload), mime_type


def scheme_of(address: str) -> str:
    head, sep, _ = address.partition(":")
    return head.lower() if sep else ""


# ---------- BOUNDARY ----------

class SandboxBoundary:
    """Which addressing schemes the host sandbox lets through."""

    RESTRICTED_SCHEMES = frozenset({"data"})

    def __init__(self, policy: SandboxPolicy):
        self.policy = policy

    def allows(self, address: str) -> bool:
        if self.policy is SandboxPolicy.OPEN:
            return True
        return scheme_of(address) in self.RESTRICTED_SCHEMES

    def check(self, address: str) -> None:
        if not self.allows(address):
            raise SandboxViolationError(address, f"scheme {scheme_of(address)!r} blocked by {self.policy.value} policy")


class _HandleEntry:
    def __init__(self, blob: bytes, mime_type: Optional[str]):
        self.blob = blob
        self.mime_type = mime_type
        self.state = ConversionState.UNCONVERTED
        self.data_uri: Optional[str] = None
        self.future: Optional[asyncio.Future] = None
        self.error: Optional[str] = None


# ---------- GATEWAY ----------

class ResourceGateway:
    """Injected per decode call; interception is scoped to one session at a time."""

    def __init__(self, policy: SandboxPolicy = SandboxPolicy.OPEN, fallback_fetcher: Optional[Fetcher] = None):
        self.policy = policy
        self.boundary = SandboxBoundary(policy)
        self._fallback = fallback_fetcher
        self._handles: Dict[str, _HandleEntry] = {}
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def handle_count(self) -> int:
        return len(self._handles)

    # ----- session -----

    @asynccontextmanager
    async def session(self):
        if self._installed:
            raise GatewayBusyError("A gateway session is already installed")
        self._installed = True
        log.debug(f"Gateway session opened ({self.policy.value})")
        try:
            yield self
        finally:
            pending = [e.future for e in self._handles.values() if e.future is not None and not e.future.done()]
            try:
                if pending:
                    # Let conversions finish; their results are dropped below
                    await asyncio.shield(asyncio.gather(*pending, return_exceptions=True))
            finally:
                self._handles.clear()
                self._installed = False
                log.debug("Gateway session closed")

    # ----- handles -----

    def create_handle(self, blob: bytes, mime_type: Optional[str] = None) -> str:
        if not self._installed:
            raise RuntimeError("create_handle() requires an active gateway session")
        handle = f"{HANDLE_PREFIX}{uuid.uuid4()}"
        entry = _HandleEntry(bytes(blob), mime_type)
        self._handles[handle] = entry
        if not self.boundary.allows(handle):
            self._start_conversion(entry)
        return handle

    def revoke(self, handle: str) -> None:
        self._handles.pop(handle, None)

    def state(self, handle: str) -> Optional[ConversionState]:
        entry = self._handles.get(handle)
        return entry.state if entry else None

    def _start_conversion(self, entry: _HandleEntry) -> None:
        if entry.state is not ConversionState.UNCONVERTED:
            return
        entry.state = ConversionState.CONVERTING
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._finish_conversion(entry, *self._convert(entry))
            return

        entry.future = loop.run_in_executor(None, self._convert, entry)
        entry.future.add_done_callback(lambda f: self._finish_conversion(entry, *self._future_outcome(f)))

    @staticmethod
    def _convert(entry: _HandleEntry) -> Tuple[Optional[str], Optional[str]]:
        try:
            return encode_data_uri(entry.blob, entry.mime_type), None
        except (ValueError, TypeError, OSError) as e:
            return None, f"{type(e).__name__}: {e}"

    @staticmethod
    def _future_outcome(future: asyncio.Future) -> Tuple[Optional[str], Optional[str]]:
        if future.cancelled():
            return None, "conversion cancelled"
        exc = future.exception()
        if exc is not None:
            return None, f"{type(exc).__name__}: {exc}"
        return future.result()

    @staticmethod
    def _finish_conversion(entry: _HandleEntry, data_uri: Optional[str], error: Optional[str]) -> None:
        if data_uri is not None:
            entry.data_uri = data_uri
            entry.state = ConversionState.CACHED
        else:
            entry.error = error
            entry.state = ConversionState.FAILED
            log.warn(f"Handle conversion failed: {error}")

    # ----- fetching -----

    def _rewritten(self, entry: _HandleEntry) -> FetchResult:
        self.boundary.check(entry.data_uri)
        data, mime_type = decode_data_uri(entry.data_uri)
        return FetchResult(FetchStatus.READY, entry.data_uri, data, mime_type, AddressingMode.REWRITTEN)

    def _intercepted(self, address: str) -> Optional[_HandleEntry]:
        if not self._installed:
            return None
        return self._handles.get(address)

    def _read_data_uri(self, address: str) -> FetchResult:
        self.boundary.check(address)
        try:
            data, mime_type = decode_data_uri(address)
        except ValueError as e:
            return FetchResult(FetchStatus.FAILED, address, error=str(e))
        return FetchResult(FetchStatus.READY, address, data, mime_type)

    def fetch_sync(self, address: str) -> FetchResult:
        """Answer without waiting. PENDING means the caller must use fetch()."""
        if scheme_of(address) == "data":
            return self._read_data_uri(address)

        entry = self._intercepted(address)
        if entry is not None:
            if self.boundary.allows(address):
                return FetchResult(FetchStatus.READY, address, entry.blob, entry.mime_type)
            if entry.state is ConversionState.UNCONVERTED:
                self._start_conversion(entry)
            if entry.state is ConversionState.CACHED:
                return self._rewritten(entry)
            if entry.state is ConversionState.FAILED:
                return FetchResult(FetchStatus.FAILED, address, error=entry.error)
            return FetchResult(FetchStatus.PENDING, address)

        self.boundary.check(address)
        if scheme_of(address) == "blob":
            return FetchResult(FetchStatus.FAILED, address, error="unknown handle")
        return FetchResult(FetchStatus.PENDING, address)

    async def fetch(self, address: str) -> FetchResult:
        if scheme_of(address) == "data":
            return self._read_data_uri(address)

        entry = self._intercepted(address)
        if entry is not None:
            if self.boundary.allows(address):
                return FetchResult(FetchStatus.READY, address, entry.blob, entry.mime_type)
            if entry.state is ConversionState.UNCONVERTED:
                self._start_conversion(entry)
            if entry.state is ConversionState.CONVERTING and entry.future is not None:
                await asyncio.shield(entry.future)
                if entry.state is ConversionState.CONVERTING:
                    self._finish_conversion(entry, *self._future_outcome(entry.future))
            if entry.state is ConversionState.CACHED:
                return self._rewritten(entry)
            return FetchResult(FetchStatus.FAILED, address, error=entry.error)

        self.boundary.check(address)
        if scheme_of(address) == "blob":
            return FetchResult(FetchStatus.FAILED, address, error="unknown handle")
        if self._fallback is None:
            return FetchResult(FetchStatus.FAILED, address, error="no fetcher for address")
        data = await self._fallback(address)
        return FetchResult(FetchStatus.READY, address, data)

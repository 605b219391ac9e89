"""Dependency resolver: matches declared resource names against sibling files.

Strategies run in a fixed order and the first match wins. Within one strategy
the earliest candidate wins, so the result depends only on the declared name and
the candidate order.

1. case-insensitive exact basename
2. same extension, stems equal after whitespace/underscore substitution or removal
3. same extension, stem containment with length difference under 20%
4. same extension, stems with one leading word prefix stripped, plural suffix
   folded and version words dropped, then equality or containment under 30%
5. same extension, colour/body synonym table
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from modelview import log
from modelview.assets import RawAsset, basename


class ResourceKind(Enum):
    TEXTURE = "texture"
    MATERIAL = "material"
    BUFFER = "buffer"


class AddressingMode(Enum):
    # Fetched with its own handle
    DIRECT = "direct"
    # Handle replaced by an inline data: form before reaching the sandbox
    REWRITTEN = "rewritten"


class MatchStrategy(Enum):
    EXACT = "exact"
    SEPARATORS = "separators"
    CONTAINMENT = "containment"
    NORMALIZED_TOKENS = "normalized_tokens"
    SYNONYM = "synonym"


@dataclass(frozen=True)
class ResourceReference:
    declared_name: str
    kind: ResourceKind = ResourceKind.TEXTURE


@dataclass
class ResolvedResource:
    reference: ResourceReference
    blob: Optional[bytes] = None
    addressing_mode: AddressingMode = AddressingMode.DIRECT
    matched_name: Optional[str] = None
    strategy: Optional[MatchStrategy] = None

    @property
    def found(self) -> bool:
        return self.blob is not None


EXTENSION_ALIASES = {"jpeg": "jpg", "tif": "tiff"}

CONTAINMENT_TOLERANCE = 0.2
TOKEN_TOLERANCE = 0.3

COLOR_TERMS = ("col", "color", "colour", "diffuse", "base", "albedo")
BODY_TERMS = ("body", "diffuse", "base", "albedo", "main")

_SEPARATOR_RUN = re.compile(r"[\s_]+")
_PREFIX = re.compile(r"^[a-z]+[_\s-](.+)$")
_PLURAL = re.compile(r"^(.+?)s(_\d+)?$")
_VERSION_WORDS = re.compile(r"_(done|final|v\d+|version\d+|old|new|backup|copy)(?=_|$)")
_TOKEN_SPLIT = re.compile(r"[\s_\-.]+")


# ---------- NAME HELPERS ----------

def split_name(name: str) -> Tuple[str, str]:
    """(stem, extension) of a basename, lower-cased; extension aliases folded."""
    base = basename(name).lower()
    if "." in base:
        stem, ext = base.rsplit(".", 1)
    else:
        stem, ext = base, ""
    return stem, EXTENSION_ALIASES.get(ext, ext)


def _underscored(stem: str) -> str:
    return _SEPARATOR_RUN.sub("_", stem.strip())


def _squashed(stem: str) -> str:
    return _SEPARATOR_RUN.sub("", stem)


def _strip_prefix(stem: str) -> str:
    match = _PREFIX.match(stem)
    if match and re.search(r"[a-z]", match.group(1)):
        return match.group(1)
    return stem


def _fold_plural(stem: str) -> str:
    match = _PLURAL.match(stem)
    if match:
        return match.group(1) + (match.group(2) or "")
    return stem


def _drop_version_words(stem: str) -> str:
    return _VERSION_WORDS.sub("", stem).strip("_") or stem


def _close_containment(a: str, b: str, tolerance: float) -> bool:
    if not a or not b:
        return False
    if a not in b and b not in a:
        return False
    average = (len(a) + len(b)) / 2
    return abs(len(a) - len(b)) / average < tolerance


def _tokens(stem: str) -> List[str]:
    return [t for t in _TOKEN_SPLIT.split(stem) if t]


# ---------- STRATEGIES ----------

def _match_exact(declared: str, candidate: str) -> bool:
    return basename(declared).lower() == basename(candidate).lower()


def _match_separators(declared: str, candidate: str) -> bool:
    d_stem, d_ext = split_name(declared)
    c_stem, c_ext = split_name(candidate)
    if d_ext != c_ext:
        return False
    if _underscored(d_stem) == _underscored(c_stem):
        return True
    return _squashed(d_stem) == _squashed(c_stem)


def _match_containment(declared: str, candidate: str) -> bool:
    d_stem, d_ext = split_name(declared)
    c_stem, c_ext = split_name(candidate)
    if d_ext != c_ext:
        return False
    return _close_containment(_underscored(d_stem), _underscored(c_stem), CONTAINMENT_TOLERANCE)


def _normalized_variants(stem: str) -> Tuple[str, str]:
    base = _drop_version_words(_underscored(stem))
    return base, _strip_prefix(base)


def _match_normalized_tokens(declared: str, candidate: str) -> bool:
    d_stem, d_ext = split_name(declared)
    c_stem, c_ext = split_name(candidate)
    if d_ext != c_ext:
        return False
    d_base, d_stripped = _normalized_variants(d_stem)
    c_base, c_stripped = _normalized_variants(c_stem)
    combinations = (
        (d_base, c_base),
        (d_stripped, c_base),
        (d_base, c_stripped),
        (d_stripped, c_stripped),
    )
    for a, b in combinations:
        a, b = _fold_plural(a), _fold_plural(b)
        if a == b or _close_containment(a, b, TOKEN_TOLERANCE):
            return True
    return False


def _match_synonym(declared: str, candidate: str) -> bool:
    d_stem, d_ext = split_name(declared)
    c_stem, c_ext = split_name(candidate)
    if d_ext != c_ext:
        return False
    declared_tokens = set(_tokens(d_stem))
    candidate_tokens = set(_tokens(c_stem))
    return bool(declared_tokens.intersection(COLOR_TERMS)) and bool(candidate_tokens.intersection(BODY_TERMS))


STRATEGIES = (
    (MatchStrategy.EXACT, _match_exact),
    (MatchStrategy.SEPARATORS, _match_separators),
    (MatchStrategy.CONTAINMENT, _match_containment),
    (MatchStrategy.NORMALIZED_TOKENS, _match_normalized_tokens),
    (MatchStrategy.SYNONYM, _match_synonym),
)


# ---------- PUBLIC API ----------

def find_match(declared_name: str, candidate_names: Sequence[str]) -> Tuple[Optional[int], Optional[MatchStrategy]]:
    """Index of the chosen candidate name and the strategy that picked it."""
    if not basename(declared_name):
        return None, None
    for strategy, matcher in STRATEGIES:
        for index, name in enumerate(candidate_names):
            if matcher(declared_name, name):
                return index, strategy
    return None, None


def resolve(declared_name: str, candidates: Iterable[RawAsset],
            kind: ResourceKind = ResourceKind.TEXTURE) -> ResolvedResource:
    """Match a declared dependency name against sibling assets. Pure and synchronous."""
    candidates = list(candidates)
    reference = ResourceReference(declared_name, kind)
    index, strategy = find_match(declared_name, [c.name for c in candidates])
    if index is None:
        log.debug(f"No sibling matches {declared_name!r} ({kind.value})")
        return ResolvedResource(reference)

    chosen = candidates[index]
    if strategy is not MatchStrategy.EXACT:
        log.info(f"Matched {declared_name!r} -> {chosen.name!r} ({strategy.value})")
    return ResolvedResource(
        reference=reference,
        blob=chosen.data,
        addressing_mode=AddressingMode.DIRECT,
        matched_name=chosen.name,
        strategy=strategy,
    )

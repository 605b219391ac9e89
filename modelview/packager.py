"""Result packager: final NormalizedModel plus reports for the warning layer."""

from __future__ import annotations

from typing import Dict

from modelview import log
from modelview.errors import DecodeError
from modelview.scene import BoundingBox, NormalizedModel, ParsedScene, SceneNode, transform_points


def world_bounding_box(root: SceneNode) -> BoundingBox:
    """Box of every mesh vertex after node transforms are applied."""
    box = BoundingBox()
    for node, world in root.walk():
        for mesh in node.meshes:
            if len(mesh.vertices):
                box = box.union(BoundingBox.from_points(transform_points(world, mesh.vertices)))
    return box


def scene_stats(parsed: ParsedScene) -> Dict[str, int]:
    stats = {"nodes": 0, "meshes": 0, "vertices": 0, "triangles": 0, "segments": 0, "points": 0}
    for node, _ in parsed.root.walk():
        stats["nodes"] += 1
        for mesh in node.meshes:
            stats["meshes"] += 1
            stats["vertices"] += mesh.vertex_count
            stats["triangles"] += mesh.triangle_count
            stats["segments"] += mesh.segment_count
            if mesh.primitive == "points":
                stats["points"] += mesh.vertex_count
    stats["materials"] = len(parsed.materials)
    stats["textures"] = sum(1 for m in parsed.materials if m.texture is not None)
    stats["animations"] = len(parsed.animations)
    return stats


def package(parsed: ParsedScene, context, decoder_id=None) -> NormalizedModel:
    """Assemble the caller-owned result. Nothing is retained here."""
    box = world_bounding_box(parsed.root)
    stats = scene_stats(parsed)
    model = NormalizedModel(
        scene_root=parsed.root,
        bounding_box=box,
        animation_clips=list(parsed.animations),
        diagnostics=context.diagnostics,
        materials=list(parsed.materials),
        decoder_id=decoder_id,
        source_name=context.primary_asset.name,
        is_placeholder=parsed.is_placeholder,
        stats=stats,
    )
    log.info(
        f"Decoded {model.source_name}: {stats['meshes']} meshes, {stats['vertices']} vertices, "
        f"{len(model.diagnostics.missing_resources)} missing, {len(model.diagnostics.warnings)} warnings"
    )
    return model


def diagnostics_report(model: NormalizedModel) -> dict:
    """JSON-serialisable summary for the dismissible-warning layer."""
    report = model.diagnostics.to_dict()
    report.update({
        "source": model.source_name,
        "decoder": model.decoder_id.value if model.decoder_id is not None else None,
        "placeholder": model.is_placeholder,
        "bounding_box": model.bounding_box.to_dict(),
        "animations": [clip.name for clip in model.animation_clips],
        "stats": dict(model.stats),
    })
    return report


def error_report(error: DecodeError) -> dict:
    """JSON-serialisable summary of a fatal error for the blocking-notice layer."""
    return {
        "kind": error.kind.value,
        "fatal": error.kind.fatal,
        "message": error.message,
        "decoder": error.decoder,
        "hints": [hint.value for hint in error.hints],
        "details": dict(error.details),
    }

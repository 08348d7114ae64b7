"""Run-folder protocol for merge runs: summary JSON, LOD previews, atlases."""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from merge_context import MergeConfig
from mesh_merge import MergeResult
from skinned_mesh import SkinnedMesh


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    previews_dir: Path
    atlas_dir: Path
    summary_path: Path
    report_path: Path


def slugify(value: str) -> str:
    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-") or "run"


def create_run_id(mesh_name: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{slugify(mesh_name)}"


def prepare_run_dir(runs_root: str, mesh_name: str) -> RunPaths:
    runs_path = Path(runs_root)
    runs_path.mkdir(parents=True, exist_ok=True)

    run_id = create_run_id(mesh_name)
    run_dir = runs_path / run_id
    previews_dir = run_dir / "previews"
    atlas_dir = run_dir / "atlas"

    previews_dir.mkdir(parents=True, exist_ok=True)
    atlas_dir.mkdir(parents=True, exist_ok=True)

    return RunPaths(
        run_id=run_id,
        run_dir=run_dir,
        previews_dir=previews_dir,
        atlas_dir=atlas_dir,
        summary_path=run_dir / "summary.json",
        report_path=run_dir / "summary.md",
    )


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(content)


def merge_summary(result: MergeResult, config: MergeConfig) -> Dict[str, Any]:
    """JSON-ready description of a merge result."""
    payload: Dict[str, Any] = {
        "success": result.success,
        "failure_reason": result.failure_reason,
        "lod_count": result.lod_count,
        "atlas_utilization": round(result.atlas_utilization, 4),
        "skipped_textures": result.skipped_textures,
        "warnings": list(result.warnings),
        "config": {
            "bone_budget": config.bone_budget,
            "atlas_size": list(config.atlas_size),
            "merge_atlas": config.merge_atlas,
            "strip_top_lods": config.strip_top_lods,
            "buffer_access": config.buffer_access.value,
            "full_precision_uvs": config.full_precision_uvs,
            "union_hierarchies": config.union_hierarchies,
        },
    }
    mesh = result.mesh
    if mesh is None:
        return payload

    payload["mesh"] = {
        "name": mesh.name,
        "joints": mesh.skeleton.names,
        "materials": [slot.material.name for slot in mesh.materials],
        "attachment_points": [
            {"name": p.name, "bone": p.bone_name, "location": np.asarray(p.location).tolist()}
            for p in mesh.attachment_points
        ],
        "bounds": {
            "min": mesh.bounds.minimum.tolist(),
            "max": mesh.bounds.maximum.tolist(),
        } if mesh.bounds is not None else None,
        "lods": [
            {
                "vertices": lod.num_vertices,
                "triangles": lod.num_triangles,
                "index_bits": lod.index_width_bits,
                "uv_channels": lod.num_uvs,
                "influences": lod.num_influences,
                "vertex_colors": lod.has_vertex_colors,
                "screen_size": lod.info.screen_size,
                "active_bones": len(lod.active_bone_indices),
                "sections": [
                    {
                        "material_index": s.material_index,
                        "base_vertex": s.base_vertex_index,
                        "vertices": s.num_vertices,
                        "triangles": s.num_triangles,
                        "bones": len(s.bone_map),
                    }
                    for s in lod.sections
                ],
            }
            for lod in mesh.lods
        ],
    }
    return payload


def summary_markdown(payload: Dict[str, Any]) -> str:
    lines = [f"# Merge run: {payload.get('mesh', {}).get('name', 'failed')}", ""]
    if not payload["success"]:
        lines.append(f"Merge failed: {payload['failure_reason']}")
        return "\n".join(lines) + "\n"

    lines.append(f"- LODs: {payload['lod_count']}")
    lines.append(f"- Atlas utilization: {100.0 * payload['atlas_utilization']:.1f}%")
    lines.append(f"- Skipped textures: {payload['skipped_textures']}")
    lines.append("")
    lines.append("| LOD | Vertices | Triangles | Index bits | Sections |")
    lines.append("|---|---|---|---|---|")
    for i, lod in enumerate(payload["mesh"]["lods"]):
        lines.append(
            f"| {i} | {lod['vertices']} | {lod['triangles']} | {lod['index_bits']} | {len(lod['sections'])} |"
        )
    for warning in payload["warnings"]:
        lines.append(f"\nWarning: {warning}")
    return "\n".join(lines) + "\n"


def write_lod_previews(mesh: SkinnedMesh, previews_dir: Path) -> List[Path]:
    """Export every LOD's bind-pose geometry as PLY."""
    paths = []
    for i, lod in enumerate(mesh.lods):
        path = previews_dir / f"lod{i}.ply"
        lod.to_trimesh().export(str(path))
        paths.append(path)
    return paths


def write_atlases(mesh: SkinnedMesh, atlas_dir: Path) -> List[Path]:
    """Dump the merged material's own textures as .npy pixel arrays."""
    paths = []
    for slot in mesh.materials:
        for name, texture in slot.material.textures.items():
            path = atlas_dir / f"{slugify(slot.material.name)}_{slugify(name)}.npy"
            np.save(path, texture.pixels)
            paths.append(path)
    return paths


def update_latest_pointer(runs_root: str, run_dir: Path) -> None:
    runs_path = Path(runs_root)
    latest = runs_path / "latest"

    if latest.exists() or latest.is_symlink():
        if latest.is_symlink() or latest.is_file():
            latest.unlink()
        else:
            shutil.rmtree(latest)

    try:
        target = os.path.relpath(run_dir, runs_path)
        latest.symlink_to(target)
    except OSError:
        # Fallback for filesystems where symlink is not available.
        latest.mkdir(parents=True, exist_ok=True)
        with (latest / "latest_run.txt").open("w", encoding="utf-8") as f:
            f.write(run_dir.name)

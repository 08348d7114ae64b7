#!/usr/bin/env python3
"""
Merge procedural character parts into one skinned mesh.

Builds a body, optional gloves and a hat attached to the head joint, merges
them and writes a run folder with summary.json, summary.md, per-LOD PLY
previews and the composited atlases.

Usage:
    python scripts/merge_procedural.py
    python scripts/merge_procedural.py --lods 3 --strip-top-lods 1 --atlas-size 512
    python scripts/merge_procedural.py --gloves --vertex-colors --mobile --runs-root runs/
"""
import argparse
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from merge_context import (
    MAX_GPU_SKIN_BONES,
    MOBILE_MAX_GPU_SKIN_BONES,
    BufferAccess,
    MergeConfig,
)
from mesh_merge import merge_skeletal_meshes
from procedural_parts import make_body, make_glove, make_hat, make_material
from run_protocol import (
    merge_summary,
    prepare_run_dir,
    summary_markdown,
    update_latest_pointer,
    write_atlases,
    write_json,
    write_lod_previews,
    write_text,
)
from section_grouper import MaterialAwareFoldPolicy
from skinned_mesh import SourcePart


def main():
    parser = argparse.ArgumentParser(
        description="Merge procedural skinned parts into a single mesh.",
    )
    parser.add_argument(
        "--runs-root", default="runs",
        help="Directory that receives run folders (default: runs)",
    )
    parser.add_argument(
        "--name", default="procedural_character",
        help="Name of the merged mesh (default: procedural_character)",
    )
    parser.add_argument(
        "--lods", type=int, default=2,
        help="LODs per procedural part (default: 2)",
    )
    parser.add_argument(
        "--strip-top-lods", type=int, default=0,
        help="Number of finest LODs to drop (default: 0)",
    )
    parser.add_argument(
        "--atlas-size", type=int, default=1024,
        help="Square atlas edge length in pixels (default: 1024)",
    )
    parser.add_argument(
        "--no-atlas", action="store_true",
        help="Keep source UVs and skip texture atlasing",
    )
    parser.add_argument(
        "--gloves", action="store_true",
        help="Add left and right gloves",
    )
    parser.add_argument(
        "--no-hat", action="store_true",
        help="Leave out the hat",
    )
    parser.add_argument(
        "--vertex-colors", action="store_true",
        help="Give the gloves vertex colors",
    )
    parser.add_argument(
        "--mobile", action="store_true",
        help=f"Use the mobile bone budget ({MOBILE_MAX_GPU_SKIN_BONES} instead of {MAX_GPU_SKIN_BONES})",
    )
    parser.add_argument(
        "--group-by-material", action="store_true",
        help="Only fold sections that share a source material",
    )
    parser.add_argument(
        "--cpu-access", action="store_true",
        help="Keep merged buffers CPU readable",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.lods < 1:
        parser.error("--lods must be at least 1")

    config = MergeConfig(
        bone_budget=MOBILE_MAX_GPU_SKIN_BONES if args.mobile else MAX_GPU_SKIN_BONES,
        atlas_size=(args.atlas_size, args.atlas_size),
        merge_atlas=not args.no_atlas,
        strip_top_lods=args.strip_top_lods,
        buffer_access=BufferAccess.FORCE_CPU_AND_GPU if args.cpu_access else BufferAccess.GPU_ONLY,
        fold_policy=MaterialAwareFoldPolicy() if args.group_by_material else None,
    )

    glove_color = (255, 220, 0, 255) if args.vertex_colors else None
    parts = [SourcePart(make_body(num_lods=args.lods))]
    if args.gloves:
        parts.append(SourcePart(make_glove("l", num_lods=args.lods, vertex_color=glove_color)))
        parts.append(SourcePart(make_glove("r", num_lods=args.lods, vertex_color=glove_color)))
    if not args.no_hat:
        parts.append(SourcePart(make_hat(num_lods=args.lods), attach_joint_name="head"))

    base_material = make_material("character_base", (4, 4), (128, 128, 128, 255))

    print(f"Merging {len(parts)} parts ...")
    result = merge_skeletal_meshes(parts, base_material, config=config, name=args.name)

    paths = prepare_run_dir(args.runs_root, args.name)
    payload = merge_summary(result, config)
    write_json(paths.summary_path, payload)
    write_text(paths.report_path, summary_markdown(payload))

    if not result.success:
        print(f"Merge failed: {result.failure_reason}")
        update_latest_pointer(args.runs_root, paths.run_dir)
        sys.exit(1)

    previews = write_lod_previews(result.mesh, paths.previews_dir)
    atlases = write_atlases(result.mesh, paths.atlas_dir)
    update_latest_pointer(args.runs_root, paths.run_dir)

    print(f"\nResult: {result.lod_count} LODs, {len(result.mesh.skeleton)} joints, "
          f"{len(result.mesh.materials)} materials")
    for i, lod in enumerate(result.mesh.lods):
        print(f"  LOD {i}: {lod.num_vertices} vertices, {lod.num_triangles} triangles, "
              f"{len(lod.sections)} sections, {lod.index_width_bits}-bit indices")
    print(f"\nRun saved to {paths.run_dir} ({len(previews)} previews, {len(atlases)} atlases)")


if __name__ == "__main__":
    main()

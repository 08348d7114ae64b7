"""Tests for lod_builder module."""
import numpy as np
import pytest

from atlas_packer import UVTransform
from lod_builder import build_lod_model, resolve_vertex_format, select_index_dtype
from merge_context import BufferAccess, MergeConfig, MergeContractError
from procedural_parts import canonical_skeleton, make_glove, make_lod_model, make_material
from section_grouper import MaterialAwareFoldPolicy
from skeleton import Transform
from skinned_mesh import DuplicatedVertices, MaterialSlot, SectionMapping, SkinnedMesh, WHITE


def flat_mesh(name, num_vertices, indices):
    """Degenerate single-section mesh with *num_vertices* vertices at the origin."""
    lod = make_lod_model(
        positions=np.zeros((num_vertices, 3)),
        indices=np.asarray(indices),
        bone_slots=np.zeros(num_vertices, dtype=np.int64),
        bone_map=[0],
    )
    return SkinnedMesh(
        name=name,
        skeleton=canonical_skeleton(),
        materials=[MaterialSlot(make_material(f"{name}_material", (4, 4), (1, 2, 3, 255)))],
        lods=[lod],
    )


def widen_influences(lod, width=8):
    extra = width - lod.num_influences
    lod.bone_weights = np.pad(lod.bone_weights, ((0, 0), (0, extra)))
    lod.bone_indices = np.pad(lod.bone_indices, ((0, 0), (0, extra)))


class TestIndexWidth:

    def test_select_index_dtype(self):
        assert select_index_dtype(65535) == np.uint16
        assert select_index_dtype(65536) == np.uint32

    def test_max_index_65535_is_16_bit(self, make_context):
        mesh = flat_mesh("edge", 65536, [0, 1, 65535])
        lod = build_lod_model(make_context([mesh]), 0)
        assert lod.max_index == 65535
        assert lod.indices.dtype == np.uint16
        assert lod.index_width_bits == 16

    def test_max_index_65536_is_32_bit(self, make_context):
        mesh = flat_mesh("over", 65537, [0, 1, 65536])
        lod = build_lod_model(make_context([mesh]), 0)
        assert lod.max_index == 65536
        assert lod.indices.dtype == np.uint32

    def test_concatenation_can_force_32_bit(self, make_context):
        a = flat_mesh("a", 40000, [0, 1, 39999])
        b = flat_mesh("b", 40000, [0, 1, 39999])
        lod = build_lod_model(make_context([a, b]), 0)
        assert a.lods[0].indices.dtype == np.uint16
        assert lod.max_index == 79999
        assert lod.indices.dtype == np.uint32
        np.testing.assert_array_equal(lod.indices[3:], [40000, 40001, 79999])


class TestSingleSource:

    def test_identity_merge_preserves_counts(self, body, make_context):
        lod = build_lod_model(make_context([body]), 0)
        source = body.lods[0]
        assert lod.num_vertices == source.num_vertices
        assert lod.num_triangles == source.num_triangles
        assert len(lod.sections) == 1
        assert lod.sections[0].bone_map == source.sections[0].bone_map
        np.testing.assert_allclose(lod.positions, source.positions)
        np.testing.assert_array_equal(lod.indices, source.indices)
        np.testing.assert_array_equal(lod.bone_indices, source.bone_indices)
        np.testing.assert_array_equal(lod.bone_weights, source.bone_weights)

    def test_vertex_transform_moves_positions_only(self, body, make_context):
        context = make_context([body])
        context.vertex_transforms[0] = Transform.from_translation(1.0, 0.0, 0.0)
        lod = build_lod_model(context, 0)
        np.testing.assert_allclose(lod.positions, body.lods[0].positions + [1.0, 0.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(lod.normals, body.lods[0].normals)

    def test_atlas_transform_remaps_uvs(self, body, make_context):
        context = make_context([body])
        context.uv_transforms_per_mesh = [[UVTransform(scale=(0.5, 0.5), offset=(0.5, 0.0))]]
        lod = build_lod_model(context, 0)
        expected = body.lods[0].uvs[:, 0] * 0.5 + [0.5, 0.0]
        np.testing.assert_allclose(lod.uvs[:, 0], expected, atol=1e-6)

    def test_atlas_transform_on_second_channel(self, body, make_context):
        body.lods[0].uvs = np.repeat(body.lods[0].uvs, 2, axis=1)
        context = make_context([body], MergeConfig(atlas_uv_channel=1))
        context.uv_transforms_per_mesh = [[UVTransform(scale=(0.5, 0.5), offset=(0.0, 0.5))]]
        lod = build_lod_model(context, 0)
        np.testing.assert_allclose(lod.uvs[:, 0], body.lods[0].uvs[:, 0], atol=1e-6)
        expected = body.lods[0].uvs[:, 1] * 0.5 + [0.0, 0.5]
        np.testing.assert_allclose(lod.uvs[:, 1], expected, atol=1e-6)

    def test_atlas_channel_missing_from_source_raises(self, body, make_context):
        assert body.lods[0].num_uvs == 1
        context = make_context([body], MergeConfig(atlas_uv_channel=1))
        context.uv_transforms_per_mesh = [[UVTransform(scale=(0.5, 0.5), offset=(0.5, 0.0))]]
        with pytest.raises(MergeContractError, match="UV channel 1"):
            build_lod_model(context, 0)

    def test_missing_atlas_channel_is_fine_without_atlas(self, body, make_context):
        context = make_context([body], MergeConfig(atlas_uv_channel=1))
        lod = build_lod_model(context, 0)
        np.testing.assert_allclose(lod.uvs[:, 0], body.lods[0].uvs[:, 0], atol=1e-6)

    @pytest.mark.parametrize("channel", [-1, 4])
    def test_atlas_channel_out_of_range_rejected(self, channel):
        with pytest.raises(ValueError, match="atlas_uv_channel"):
            MergeConfig(atlas_uv_channel=channel)

    def test_buffer_access(self, body, make_context):
        config = MergeConfig(buffer_access=BufferAccess.FORCE_CPU_AND_GPU)
        assert build_lod_model(make_context([body], config), 0).needs_cpu_access
        assert not build_lod_model(make_context([body]), 0).needs_cpu_access


class TestVertexFormat:

    def test_extra_influences_pad_narrow_sources(self, body, glove, make_context):
        widen_influences(glove.lods[0])
        context = make_context([body, glove])
        assert resolve_vertex_format(context, 0).num_influences == 8

        lod = build_lod_model(context, 0)
        assert lod.bone_weights.shape[1] == 8
        body_rows = lod.bone_weights[:body.lods[0].num_vertices]
        assert (body_rows[:, 0] == 255).all()
        assert (body_rows[:, 4:] == 0).all()

    def test_uv_channels_widen_to_max(self, body, glove, make_context):
        glove.lods[0].uvs = np.repeat(glove.lods[0].uvs, 2, axis=1)
        lod = build_lod_model(make_context([body, glove]), 0)
        assert lod.num_uvs == 2
        n_body = body.lods[0].num_vertices
        assert (lod.uvs[:n_body, 1] == 0).all()
        np.testing.assert_allclose(lod.uvs[n_body:, 1], glove.lods[0].uvs[:, 1])

    def test_half_precision_uvs(self, body, make_context):
        lod = build_lod_model(make_context([body], MergeConfig(full_precision_uvs=False)), 0)
        assert lod.uvs.dtype == np.float16
        assert lod.vertex_format.full_precision_uvs is False


class TestSkinWeights:

    def test_bone_slots_follow_merged_map(self, body, glove, make_context):
        context = make_context([body, glove])
        lod = build_lod_model(context, 0)
        section = lod.sections[0]

        glove_lod = glove.lods[0]
        glove_section = glove_lod.sections[0]
        remap = context.bone_remaps[1]
        n_body = body.lods[0].num_vertices
        for v in range(glove_lod.num_vertices):
            expected = remap[glove_section.bone_map[glove_lod.bone_indices[v, 0]]]
            assert section.bone_map[lod.bone_indices[n_body + v, 0]] == expected

    def test_zero_weight_slots_keep_their_index(self, body, make_context):
        body.lods[0].bone_indices[:, 1] = 99
        lod = build_lod_model(make_context([body]), 0)
        assert (lod.bone_indices[:, 1] == 99).all()

    def test_weighted_slot_outside_bone_map_raises(self, body, make_context):
        body.lods[0].bone_indices[0, 0] = 50
        with pytest.raises(MergeContractError):
            build_lod_model(make_context([body]), 0)


class TestVertexColors:

    def test_missing_colors_become_white(self, body, make_context):
        glove = make_glove(vertex_color=(10, 20, 30, 255))
        context = make_context([body, glove])
        assert context.has_vertex_colors

        lod = build_lod_model(context, 0)
        n_body = body.lods[0].num_vertices
        assert lod.colors.shape == (lod.num_vertices, 4)
        assert (lod.colors[:n_body] == WHITE).all()
        assert (lod.colors[n_body:] == (10, 20, 30, 255)).all()

    def test_no_colors_anywhere(self, body, glove, make_context):
        assert build_lod_model(make_context([body, glove]), 0).colors is None


class TestDuplicatedVertices:

    def test_offsets_applied_to_contributors(self, body, glove, make_context):
        glove_section = glove.lods[0].sections[0]
        index_data = np.zeros((glove_section.num_vertices, 2), dtype=np.uint32)
        index_data[0] = (0, 2)
        index_data[8] = (2, 1)
        glove_section.duplicated_vertices = DuplicatedVertices(
            vertex_data=np.array([8, 9, 0], dtype=np.uint32),
            index_data=index_data,
            has_overlapping=True,
        )
        lod = build_lod_model(make_context([body, glove]), 0)
        merged = lod.sections[0].duplicated_vertices
        n_body = body.lods[0].num_vertices

        assert merged.has_overlapping
        np.testing.assert_array_equal(merged.vertex_data, [n_body + 8, n_body + 9, n_body])
        assert len(merged.index_data) == lod.sections[0].num_vertices
        assert (merged.index_data[:n_body] == 0).all()
        np.testing.assert_array_equal(merged.index_data[n_body], [0, 2])
        np.testing.assert_array_equal(merged.index_data[n_body + 8], [2, 1])

    def test_no_data_gives_empty_structure(self, body, glove, make_context):
        lod = build_lod_model(make_context([body, glove]), 0)
        merged = lod.sections[0].duplicated_vertices
        assert not merged.has_overlapping
        assert len(merged.vertex_data) == 0
        assert merged.index_data.shape == (lod.num_vertices, 2)


class TestLODMetadata:

    def test_screen_sizes_take_minimum(self, body, glove, make_context):
        glove.lods[0].info.screen_size = 0.8
        body.lods[0].info.screen_size_per_platform = {"mobile": 0.4}
        glove.lods[0].info.screen_size_per_platform = {"mobile": 0.6, "console": 0.9}
        lod = build_lod_model(make_context([body, glove]), 0)
        assert lod.info.screen_size == pytest.approx(0.8)
        assert lod.info.screen_size_per_platform == {"mobile": 0.4, "console": 0.9}

    def test_hysteresis_takes_minimum(self, body, glove, make_context):
        body.lods[0].info.hysteresis = 0.3
        glove.lods[0].info.hysteresis = 0.1
        lod = build_lod_model(make_context([body, glove]), 0)
        assert lod.info.hysteresis == pytest.approx(0.1)

    def test_thresholds_default_to_zero_without_contributors(self, body, make_context):
        body.lods[0].sections = []
        body.lods[0].indices = np.zeros(0, dtype=np.uint16)
        lod = build_lod_model(make_context([body]), 0)
        assert lod.sections == []
        assert lod.info.screen_size == 0.0
        assert lod.info.hysteresis == 0.0

    def test_uv_densities_take_maximum(self, body, glove, make_context):
        context = make_context([glove, body])
        build_lod_model(context, 0)
        assert len(context.material_slots) == 1
        assert context.material_slots[0].uv_densities[0] == pytest.approx(512)

    def test_active_and_required_bones(self, body, glove, make_context):
        lod = build_lod_model(make_context([body, glove]), 0)
        assert lod.active_bone_indices == list(range(8))
        assert lod.required_bones == list(range(1, 8))

    def test_glove_only_active_bones_include_parents(self, skeleton, make_context):
        glove = make_glove()
        context = make_context([glove])
        context.unified_hierarchy = skeleton
        context.bone_remaps = [[0, 6, 7]]
        lod = build_lod_model(context, 0)
        assert lod.active_bone_indices == [0, 1, 2, 6, 7]
        assert lod.required_bones == [6, 7]


class TestMaterialSlots:

    def test_slots_reused_across_lods(self, body, glove, make_context):
        context = make_context([body, glove])
        first = build_lod_model(context, 0)
        second = build_lod_model(context, 1)
        assert len(context.material_slots) == 1
        assert context.material_ids == [-1]
        assert first.sections[0].material_index == second.sections[0].material_index == 0
        assert context.material_slots[0].material is context.merged_material

    def test_external_ids_give_separate_slots(self, body, glove, make_context):
        config = MergeConfig(fold_policy=MaterialAwareFoldPolicy())
        context = make_context([body, glove], config, [SectionMapping([5]), SectionMapping([6])])
        lod0 = build_lod_model(context, 0)
        lod1 = build_lod_model(context, 1)
        assert context.material_ids == [5, 6]
        assert [s.material_index for s in lod0.sections] == [0, 1]
        assert [s.material_index for s in lod1.sections] == [0, 1]
        assert lod0.sections[1].base_vertex_index == body.lods[0].num_vertices
        assert lod0.sections[1].base_index == len(body.lods[0].indices)

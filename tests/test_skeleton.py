"""Tests for skeleton module."""
import math

import numpy as np
import pytest

from skeleton import (
    INDEX_NONE,
    JointHierarchy,
    Transform,
    component_space_transforms,
    compute_inverse_bind_matrices,
)


class TestTransform:

    def test_composition_applies_left_first(self):
        rotate = Transform.from_axis_angle([0, 0, 1], math.pi / 2)
        move = Transform.from_translation(1.0, 0.0, 0.0)
        point = np.array([[1.0, 0.0, 0.0]])

        # rotate then move: (1,0,0) -> (0,1,0) -> (1,1,0)
        np.testing.assert_allclose((rotate * move).transform_points(point), [[1.0, 1.0, 0.0]], atol=1e-12)
        # move then rotate: (1,0,0) -> (2,0,0) -> (0,2,0)
        np.testing.assert_allclose((move * rotate).transform_points(point), [[0.0, 2.0, 0.0]], atol=1e-12)

    def test_composition_matches_matrices(self):
        a = Transform.from_axis_angle([1, 1, 0], 0.4, translation=[0.3, -1.0, 2.0])
        b = Transform.from_axis_angle([0, 0, 1], -1.1, translation=[5.0, 0.0, 0.5])
        np.testing.assert_allclose((a * b).to_matrix(), b.to_matrix() @ a.to_matrix(), atol=1e-12)

    def test_rotation_stays_normalized(self):
        t = Transform.from_axis_angle([0, 1, 0], 0.1)
        result = Transform.identity()
        for _ in range(1000):
            result = result * t
        assert np.linalg.norm(result.rotation) == pytest.approx(1.0)

    def test_inverse(self):
        t = Transform(
            rotation=Transform.from_axis_angle([0, 0, 1], 0.7).rotation,
            translation=[1.0, 2.0, 3.0],
            scale=[2.0, 2.0, 2.0],
        )
        assert (t * t.inverse()).is_identity(tolerance=1e-9)
        np.testing.assert_allclose(t.inverse().to_matrix(), np.linalg.inv(t.to_matrix()), atol=1e-12)

    def test_inverse_of_zero_scale_does_not_divide(self):
        t = Transform(scale=[0.0, 1.0, 1.0])
        inv = t.inverse()
        assert np.isfinite(inv.scale).all()
        assert inv.scale[0] == 0.0

    def test_identity(self):
        assert Transform.identity().is_identity()
        assert not Transform.from_translation(0.0, 0.0, 1.0).is_identity()


class TestJointHierarchy:

    def test_canonical_skeleton_is_topological(self, skeleton):
        assert len(skeleton) == 8
        assert skeleton.is_topologically_sorted()
        assert skeleton.parent_index(0) == INDEX_NONE
        assert skeleton.find_index("hand_r") == 7
        assert skeleton.find_index("tail") == INDEX_NONE
        assert skeleton.find_index(None) == INDEX_NONE

    def test_parent_after_child_rejected(self):
        h = JointHierarchy()
        h.add_joint("root", -1)
        with pytest.raises(ValueError):
            h.add_joint("a", 1)

    def test_second_root_rejected(self):
        h = JointHierarchy()
        h.add_joint("root", -1)
        with pytest.raises(ValueError):
            h.add_joint("other_root", -1)

    def test_root_must_have_no_parent(self):
        with pytest.raises(ValueError):
            JointHierarchy().add_joint("root", 0)

    def test_duplicate_name_rejected(self):
        h = JointHierarchy.from_parents(["root", "a"], [-1, 0])
        with pytest.raises(ValueError):
            h.add_joint("a", 0)

    def test_frozen_hierarchy_is_immutable(self, skeleton):
        skeleton.freeze()
        with pytest.raises(RuntimeError):
            skeleton.add_joint("extra", 0)
        with pytest.raises(RuntimeError):
            skeleton.set_local_transform(0, Transform.identity())
        assert not skeleton.copy().frozen

    def test_descendants(self, skeleton):
        spine = skeleton.find_index("spine")
        names = {skeleton.name_of(i) for i in skeleton.descendants(spine)}
        assert names == {"head", "upper_arm_l", "hand_l", "upper_arm_r", "hand_r"}
        assert skeleton.descendants(skeleton.find_index("hand_r")) == []

    def test_ensure_parents_exist_and_sort(self, skeleton):
        hand_r = skeleton.find_index("hand_r")
        head = skeleton.find_index("head")
        assert skeleton.ensure_parents_exist_and_sort([hand_r, head]) == [0, 1, 2, 3, 6, 7]


class TestForwardKinematics:

    def test_component_space_accumulates_translations(self, skeleton):
        cs = component_space_transforms(skeleton)
        head = skeleton.find_index("head")
        hand_r = skeleton.find_index("hand_r")
        np.testing.assert_allclose(cs[head].translation, [0.0, 0.0, 1.8])
        np.testing.assert_allclose(cs[hand_r].translation, [-0.7, 0.0, 1.7])

    def test_rotated_parent_moves_child(self):
        h = JointHierarchy.from_parents(
            ["root", "child"], [-1, 0],
            [Transform.from_axis_angle([0, 0, 1], math.pi / 2), Transform.from_translation(1.0, 0.0, 0.0)],
        )
        cs = component_space_transforms(h)
        np.testing.assert_allclose(cs[1].translation, [0.0, 1.0, 0.0], atol=1e-12)

    def test_inverse_bind_matrices(self, skeleton):
        matrices = compute_inverse_bind_matrices(skeleton)
        assert matrices.shape == (8, 4, 4)
        cs = component_space_transforms(skeleton)
        for matrix, transform in zip(matrices, cs):
            np.testing.assert_allclose(matrix @ transform.to_matrix(), np.eye(4), atol=1e-9)

    def test_empty_hierarchy(self):
        assert component_space_transforms(JointHierarchy()) == []
        assert compute_inverse_bind_matrices(JointHierarchy()).shape == (0, 4, 4)

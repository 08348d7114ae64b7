"""
Joint hierarchy primitives for skinned meshes.

A JointHierarchy is an arena-indexed array of joints kept in topological
order: every parent precedes its children and the root sits at index 0.
Forward kinematics is therefore a single pass over the array.

Transforms follow the "apply self, then other" composition order used by
most game runtimes: ``(local * parent_component_space)`` yields the joint's
component-space transform.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
from trimesh import transformations as tf

logger = logging.getLogger(__name__)

INDEX_NONE = -1
SMALL_NUMBER = 1e-8


def _identity_quaternion() -> np.ndarray:
    return np.array([1.0, 0.0, 0.0, 0.0])


@dataclass
class Transform:
    """Rotation (unit quaternion, w-x-y-z) + translation + per-axis scale."""

    rotation: np.ndarray = field(default_factory=_identity_quaternion)
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(4)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)
        self.scale = np.asarray(self.scale, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "Transform":
        return cls()

    @classmethod
    def from_translation(cls, x: float, y: float, z: float) -> "Transform":
        return cls(translation=np.array([x, y, z], dtype=np.float64))

    @classmethod
    def from_axis_angle(
        cls,
        axis: Sequence[float],
        angle_rad: float,
        translation: Optional[Sequence[float]] = None,
    ) -> "Transform":
        rotation = tf.quaternion_about_axis(angle_rad, axis)
        if translation is None:
            translation = np.zeros(3)
        return cls(rotation=rotation, translation=translation)

    def copy(self) -> "Transform":
        return Transform(
            rotation=self.rotation.copy(),
            translation=self.translation.copy(),
            scale=self.scale.copy(),
        )

    def rotation_matrix(self) -> np.ndarray:
        return tf.quaternion_matrix(self.rotation)[:3, :3]

    def to_matrix(self) -> np.ndarray:
        """4x4 column-vector matrix: translate @ rotate @ scale."""
        matrix = tf.quaternion_matrix(self.rotation)
        matrix[:3, :3] = matrix[:3, :3] * self.scale[np.newaxis, :]
        matrix[:3, 3] = self.translation
        return matrix

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply scale, rotation and translation to an (N, 3) array."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (points * self.scale) @ self.rotation_matrix().T + self.translation

    def is_identity(self, tolerance: float = 1e-9) -> bool:
        return bool(
            np.allclose(self.translation, 0.0, atol=tolerance)
            and np.allclose(self.scale, 1.0, atol=tolerance)
            and abs(abs(self.rotation[0]) - 1.0) <= tolerance
        )

    def normalize_rotation(self) -> None:
        self.rotation = tf.unit_vector(self.rotation)

    def inverse(self) -> "Transform":
        safe = np.abs(self.scale) > SMALL_NUMBER
        inv_scale = np.zeros(3)
        inv_scale[safe] = 1.0 / self.scale[safe]
        inv_rotation = tf.quaternion_conjugate(tf.unit_vector(self.rotation))
        inv_rotation_matrix = tf.quaternion_matrix(inv_rotation)[:3, :3]
        inv_translation = inv_rotation_matrix @ (inv_scale * -self.translation)
        return Transform(
            rotation=inv_rotation,
            translation=inv_translation,
            scale=inv_scale,
        )

    def __mul__(self, other: "Transform") -> "Transform":
        """Compose: apply ``self`` first, then ``other``."""
        if not isinstance(other, Transform):
            return NotImplemented
        rotation = tf.unit_vector(tf.quaternion_multiply(other.rotation, self.rotation))
        translation = other.rotation_matrix() @ (other.scale * self.translation) + other.translation
        return Transform(
            rotation=rotation,
            translation=translation,
            scale=self.scale * other.scale,
        )


@dataclass
class Joint:
    """A named joint with its parent index and local bind transform."""
    name: str
    parent_index: int
    local_transform: Transform = field(default_factory=Transform.identity)


class JointHierarchy:
    """Topologically ordered joint array (parents before children)."""

    def __init__(self, joints: Optional[Iterable[Joint]] = None):
        self._joints: List[Joint] = []
        self._index_by_name: Dict[str, int] = {}
        self._frozen = False
        for joint in joints or []:
            self.add_joint(joint.name, joint.parent_index, joint.local_transform)

    @classmethod
    def from_parents(
        cls,
        names: Sequence[str],
        parents: Sequence[int],
        transforms: Optional[Sequence[Transform]] = None,
    ) -> "JointHierarchy":
        if len(names) != len(parents):
            raise ValueError("names and parents must have the same length")
        if transforms is not None and len(transforms) != len(names):
            raise ValueError("transforms must match the joint count")
        hierarchy = cls()
        for i, (name, parent) in enumerate(zip(names, parents)):
            local = transforms[i] if transforms is not None else Transform.identity()
            hierarchy.add_joint(name, parent, local)
        return hierarchy

    # ─── Construction ────────────────────────────────────────────────────────

    def add_joint(
        self,
        name: str,
        parent_index: int,
        local_transform: Optional[Transform] = None,
    ) -> int:
        """Append a joint and return its index.

        Raises:
            RuntimeError: hierarchy is frozen.
            ValueError: the joint would break the topological ordering or
                duplicate an existing name.
        """
        self._check_mutable()
        index = len(self._joints)
        if index == 0:
            if parent_index != INDEX_NONE:
                raise ValueError(f"Root joint '{name}' must have parent {INDEX_NONE}")
        elif not 0 <= parent_index < index:
            raise ValueError(
                f"Joint '{name}' at index {index} has parent {parent_index}; "
                "parents must precede their children"
            )
        if name in self._index_by_name:
            raise ValueError(f"Duplicate joint name: {name}")

        local = local_transform.copy() if local_transform is not None else Transform.identity()
        self._joints.append(Joint(name=name, parent_index=parent_index, local_transform=local))
        self._index_by_name[name] = index
        return index

    def set_local_transform(self, index: int, transform: Transform) -> None:
        self._check_mutable()
        self._joints[index].local_transform = transform.copy()

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def copy(self) -> "JointHierarchy":
        """Unfrozen deep copy."""
        return JointHierarchy(
            Joint(j.name, j.parent_index, j.local_transform.copy()) for j in self._joints
        )

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError("Joint hierarchy is frozen")

    # ─── Queries ─────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._joints)

    def __iter__(self) -> Iterator[Joint]:
        return iter(self._joints)

    def __getitem__(self, index: int) -> Joint:
        return self._joints[index]

    @property
    def names(self) -> List[str]:
        return [j.name for j in self._joints]

    def find_index(self, name: Optional[str]) -> int:
        if name is None:
            return INDEX_NONE
        return self._index_by_name.get(name, INDEX_NONE)

    def name_of(self, index: int) -> str:
        return self._joints[index].name

    def parent_index(self, index: int) -> int:
        return self._joints[index].parent_index

    def local_transform(self, index: int) -> Transform:
        return self._joints[index].local_transform

    def is_child_of(self, child_index: int, parent_index: int) -> bool:
        """True when *parent_index* is a strict ancestor of *child_index*."""
        if child_index <= parent_index:
            return False
        current = self._joints[child_index].parent_index
        while current != INDEX_NONE:
            if current == parent_index:
                return True
            if current < parent_index:
                return False
            current = self._joints[current].parent_index
        return False

    def descendants(self, index: int) -> List[int]:
        return [
            child for child in range(index + 1, len(self._joints))
            if self.is_child_of(child, index)
        ]

    def ensure_parents_exist_and_sort(self, indices: Iterable[int]) -> List[int]:
        """Close *indices* under the parent relation and sort ascending."""
        required = set()
        for index in indices:
            current = index
            while current != INDEX_NONE and current not in required:
                required.add(current)
                current = self._joints[current].parent_index
        return sorted(required)

    def is_topologically_sorted(self) -> bool:
        for index, joint in enumerate(self._joints):
            if index == 0:
                if joint.parent_index != INDEX_NONE:
                    return False
            elif not 0 <= joint.parent_index < index:
                return False
        return True


def component_space_transforms(hierarchy: JointHierarchy) -> List[Transform]:
    """Forward kinematics over the bind pose.

    Each joint's component-space transform is its local transform composed
    with its (already computed) parent's component-space transform.
    """
    result: List[Transform] = []
    for index, joint in enumerate(hierarchy):
        if index == 0:
            result.append(joint.local_transform.copy())
            continue
        space_base = joint.local_transform * result[joint.parent_index]
        space_base.normalize_rotation()
        result.append(space_base)
    return result


def compute_inverse_bind_matrices(hierarchy: JointHierarchy) -> np.ndarray:
    """(N, 4, 4) inverse component-space bind matrices."""
    transforms = component_space_transforms(hierarchy)
    if not transforms:
        return np.zeros((0, 4, 4))
    matrices = np.stack([t.to_matrix() for t in transforms])
    return np.linalg.inv(matrices)

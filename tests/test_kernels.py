"""
Tests for kernels.py: kernel banks, selection and marker-driven estimation.
"""
import json

import numpy as np
import pytest

from flim.core import (
    ArchitectureMismatchError,
    DimensionMismatchError,
    EmptyPatchSetError,
    IndexOutOfRangeError,
    KernelBank,
    KernelEstimator,
    PatchSampler,
    adjacency_from_kernel,
    select_kernels,
    select_kernels_manual,
)
from flim.core.kernels import ordered_kmeans, unit_norm_columns
from conftest import make_toy_image, make_toy_markers, toy_layer


def _bank3():
    kernels = np.array([
        [1.0, 2.0, 3.0],
        [4.0, 5.0, 6.0],
    ])
    return KernelBank(kernels=kernels, mean=np.zeros(2), stdev=np.ones(2),
                      bias=np.array([0.1, 0.2, 0.3]))


def _toy_patch_sets(nimages=2):
    sampler = PatchSampler(adjacency_from_kernel(toy_layer(), dim3d=False))
    return [
        sampler.sample_markers(make_toy_image(seed), make_toy_markers())
        for seed in range(nimages)
    ]


# ---------------------------------------------------------------------------
# Kernel bank and selection
# ---------------------------------------------------------------------------

class TestKernelBank:

    def test_mismatched_normalization_is_rejected(self):
        with pytest.raises(DimensionMismatchError):
            KernelBank(kernels=np.ones((9, 2)), mean=np.zeros(8), stdev=np.ones(9))

    def test_mismatched_bias_is_rejected(self):
        with pytest.raises(DimensionMismatchError):
            KernelBank(kernels=np.ones((9, 2)), mean=np.zeros(9), stdev=np.ones(9),
                       bias=np.zeros(3))

    def test_folded_matches_normalized_projection(self):
        rng = np.random.default_rng(3)
        bank = KernelBank(kernels=rng.normal(size=(6, 4)), mean=rng.normal(size=6),
                          stdev=rng.uniform(0.5, 2.0, size=6), bias=rng.normal(size=4))
        patches = rng.normal(size=(10, 6)).astype(np.float32)

        expected = ((patches - bank.mean) / bank.stdev) @ bank.kernels + bank.bias
        folded = bank.folded()
        np.testing.assert_allclose(patches @ folded.kernels + folded.bias, expected,
                                   rtol=1e-4, atol=1e-4)

    def test_select_keeps_requested_order(self):
        reduced = _bank3().select([2, 0])
        np.testing.assert_array_equal(reduced.kernels, [[3.0, 1.0], [6.0, 4.0]])
        np.testing.assert_allclose(reduced.bias, [0.3, 0.1])


class TestSelectKernels:

    def test_columns_in_requested_order(self):
        kernels = _bank3().kernels
        selected = select_kernels(kernels, [2, 0])
        np.testing.assert_array_equal(selected[:, 0], kernels[:, 2])
        np.testing.assert_array_equal(selected[:, 1], kernels[:, 0])

    @pytest.mark.parametrize("indices", [[3], [0, -1]])
    def test_out_of_range(self, indices):
        with pytest.raises(IndexOutOfRangeError):
            select_kernels(_bank3().kernels, indices)

    def test_manual_selection_from_files(self, tmp_path):
        bank_path = tmp_path / "conv1-kernels.npy"
        np.save(str(bank_path), _bank3().kernels)
        selection_path = tmp_path / "selected.json"
        selection_path.write_text(json.dumps({"selected_kernels": [1]}))

        selected = select_kernels_manual(str(bank_path), str(selection_path))
        np.testing.assert_array_equal(selected, [[2.0], [5.0]])


# ---------------------------------------------------------------------------
# Estimation helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_unit_norm_columns(self):
        kernels = unit_norm_columns(np.array([[3.0, 0.0], [4.0, 0.0]]))
        np.testing.assert_allclose(kernels[:, 0], [0.6, 0.8])
        np.testing.assert_array_equal(kernels[:, 1], [0.0, 0.0])

    def test_ordered_kmeans_follows_first_member(self):
        data = np.array([[10.0, 10.0], [0.0, 0.0], [10.2, 10.0], [0.1, 0.0]])
        centers = ordered_kmeans(data, 2, seed=0)
        np.testing.assert_allclose(centers[0], [10.1, 10.0])
        np.testing.assert_allclose(centers[1], [0.05, 0.0])


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------

class TestKernelEstimator:

    def test_statistics_add_stdev_factor(self):
        patch_sets = [{1: np.array([[0.0, 1.0], [2.0, 1.0]])}]
        mean, stdev = KernelEstimator(toy_layer(), stdev_factor=0.5).population_statistics(patch_sets)
        np.testing.assert_allclose(mean, [1.0, 1.0])
        np.testing.assert_allclose(stdev, [1.5, 0.5])

    def test_normalized_marker_patches_are_centred(self):
        patch_sets = _toy_patch_sets()
        mean, stdev = KernelEstimator(toy_layer()).population_statistics(patch_sets)
        union = np.concatenate([p for s in patch_sets for p in s.values()])
        np.testing.assert_allclose(((union - mean) / stdev).mean(axis=0), 0.0, atol=1e-6)

    def test_cluster_empty_patch_set(self):
        with pytest.raises(EmptyPatchSetError):
            KernelEstimator(toy_layer()).cluster(np.zeros((0, 9)), 2, image="a", label=1)

    def test_cluster_caps_at_patch_count(self):
        kernels = KernelEstimator(toy_layer()).cluster(np.eye(9)[:1], 2)
        assert kernels.shape == (9, 1)

    def test_image_kernels_use_all_classes(self):
        rng = np.random.default_rng(0)
        estimator = KernelEstimator(toy_layer(nkernels_per_image=4))
        kernels = estimator.image_kernels(
            {1: rng.normal(size=(1, 9)), 2: rng.normal(size=(5, 9))},
            mean=np.zeros(9), stdev=np.ones(9))
        assert kernels.shape == (9, 3)
        np.testing.assert_allclose(np.linalg.norm(kernels, axis=0), 1.0, rtol=1e-6)

    def test_image_kernels_reduce_to_nkernels_per_image(self):
        rng = np.random.default_rng(0)
        estimator = KernelEstimator(toy_layer(nkernels_per_image=3, noutput_channels=2))
        kernels = estimator.image_kernels(
            {1: rng.normal(size=(6, 9)), 2: rng.normal(size=(6, 9))},
            mean=np.zeros(9), stdev=np.ones(9))
        assert kernels.shape == (9, 3)

    def test_consensus_width(self):
        bank = KernelEstimator(toy_layer()).estimate(_toy_patch_sets(), layer_index=0)
        assert bank.ncols == 2
        assert bank.dim == 9
        np.testing.assert_allclose(np.linalg.norm(bank.kernels, axis=0), 1.0, rtol=1e-5)

    def test_consensus_needs_enough_kernels(self):
        estimator = KernelEstimator(toy_layer(nkernels_per_image=4, noutput_channels=4))
        with pytest.raises(ArchitectureMismatchError):
            estimator.consensus([np.eye(9)[:, :3]], layer_index=0)

    def test_learning_is_deterministic(self):
        patch_sets = _toy_patch_sets(3)
        first = KernelEstimator(toy_layer(), seed=7).estimate(patch_sets)
        second = KernelEstimator(toy_layer(), seed=7, max_workers=1).estimate(patch_sets)
        np.testing.assert_array_equal(first.kernels, second.kernels)
        np.testing.assert_array_equal(first.mean, second.mean)
        np.testing.assert_array_equal(first.stdev, second.stdev)

    def test_pca_width(self):
        bank = KernelEstimator(toy_layer()).estimate_pca(_toy_patch_sets(), layer_index=0)
        assert bank.kernels.shape == (9, 2)

    def test_no_patches(self):
        with pytest.raises(EmptyPatchSetError):
            KernelEstimator(toy_layer()).estimate([{}])

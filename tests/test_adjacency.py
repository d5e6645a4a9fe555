"""
Tests for adjacency.py and patches.py: receptive fields and patch sampling
with zero padding.
"""
import numpy as np
import pytest

from flim.core import (
    InsufficientMarkersError,
    LayerSpec,
    MarkerSet,
    MultibandImage,
    PatchSampler,
    adjacency_from_kernel,
    adjacency_from_pooling,
)


class TestAdjacency:

    def test_offsets_are_z_major(self):
        adjacency = adjacency_from_kernel(LayerSpec(kernel_size=(3, 3, 1)), dim3d=False)
        offsets = adjacency.offsets
        assert adjacency.ntaps == 9
        assert tuple(offsets[0]) == (0, -1, -1)
        assert tuple(offsets[1]) == (0, -1, 0)
        assert tuple(offsets[4]) == (0, 0, 0)
        assert tuple(offsets[8]) == (0, 1, 1)

    def test_span_includes_dilation_and_atrous(self):
        layer = LayerSpec(kernel_size=(3, 3, 1), dilation_rate=(2, 1, 1))
        adjacency = adjacency_from_kernel(layer, dim3d=False, atrous_factor=2)
        # (k - 1) * dilation * atrous + 1 per axis, (z, y, x)
        assert adjacency.span == (1, 5, 9)

    @pytest.mark.parametrize("k,dilation,atrous,dim3d", [
        (2, 1, 1, False),
        (5, 2, 3, False),
        (3, 3, 4, False),
        (3, 2, 2, True),
        (4, 1, 3, True),
    ])
    def test_span_formula(self, k, dilation, atrous, dim3d):
        layer = LayerSpec(kernel_size=(k, k, k), dilation_rate=(dilation, dilation, dilation))
        adjacency = adjacency_from_kernel(layer, dim3d=dim3d, atrous_factor=atrous)
        span = (k - 1) * dilation * atrous + 1
        assert adjacency.span == ((span if dim3d else 1), span, span)
        assert adjacency.ntaps == k ** (3 if dim3d else 2)
        extent = adjacency.offsets.max(axis=0) - adjacency.offsets.min(axis=0) + 1
        assert tuple(extent) == adjacency.span

    def test_2d_ignores_depth(self):
        layer = LayerSpec(kernel_size=(3, 3, 3))
        assert adjacency_from_kernel(layer, dim3d=False).ntaps == 9
        assert adjacency_from_kernel(layer, dim3d=True).ntaps == 27

    def test_even_kernel_padding(self):
        adjacency = adjacency_from_pooling((2, 2, 1), dim3d=False)
        assert adjacency.padding == ((0, 0), (1, 0), (1, 0))
        assert sorted(set(adjacency.offsets[:, 2])) == [-1, 0]

    def test_invalid_atrous_factor(self):
        with pytest.raises(ValueError):
            adjacency_from_kernel(LayerSpec(), dim3d=False, atrous_factor=0)


class TestPatchSampler:

    def _sampler(self):
        return PatchSampler(adjacency_from_kernel(LayerSpec(kernel_size=(3, 3, 1)), dim3d=False))

    def test_border_is_zero_padded(self):
        image = MultibandImage.from_array(np.arange(1, 10, dtype=np.float32).reshape(3, 3))
        patches = self._sampler().sample(image, np.array([[0, 0, 0]]))
        np.testing.assert_array_equal(patches[0], [0, 0, 0, 0, 1, 2, 0, 4, 5])

    def test_row_layout_is_tap_then_channel(self):
        base = np.arange(1, 10, dtype=np.float32).reshape(3, 3)
        image = MultibandImage.from_array(np.stack([base, 10 * base], axis=-1))
        sampler = self._sampler()
        patches = sampler.sample(image, np.array([[0, 1, 1]]))
        assert patches.shape == (1, sampler.patch_size(2)) == (1, 18)
        # Centre tap is tap 4.
        assert patches[0, 4 * 2 + 0] == 5
        assert patches[0, 4 * 2 + 1] == 50

    def test_sample_markers_by_class(self, toy_image, toy_markers):
        patches = self._sampler().sample_markers(toy_image, toy_markers)
        assert list(patches.keys()) == [1, 2]
        assert patches[1].shape == (4, 9)
        assert patches[2].shape == (4, 9)

    def test_class_without_voxels_raises(self, toy_image):
        markers = MarkerSet(np.array([[0, 1, 1], [0, 20, 20]]), np.array([1, 2]))
        with pytest.raises(InsufficientMarkersError) as excinfo:
            self._sampler().sample_markers(toy_image, markers, image_name="toy", layer=0)
        assert excinfo.value.label == 2
        assert excinfo.value.image == "toy"

    def test_declared_class_without_markers_raises(self, toy_image):
        markers = MarkerSet(np.array([[0, 1, 1]]), np.array([1]), classes=(1, 2))
        with pytest.raises(InsufficientMarkersError):
            self._sampler().sample_markers(toy_image, markers)

    def test_empty_marker_set_raises(self, toy_image):
        markers = MarkerSet(np.zeros((0, 3)), np.zeros(0))
        with pytest.raises(InsufficientMarkersError):
            self._sampler().sample_markers(toy_image, markers)


class TestMarkerSet:

    def test_scaled_merges_duplicates(self):
        markers = MarkerSet(np.array([[0, 5, 7], [0, 4, 6], [0, 4, 6]]), np.array([1, 1, 2]))
        scaled = markers.scaled(2)
        assert len(scaled) == 2
        assert scaled.class_labels == (1, 2)
        assert {tuple(c) for c in scaled.coords} == {(0, 2, 3)}

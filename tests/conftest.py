"""
Shared fixtures for the FLIM tests.

The toy problem is an 8x8 single-channel image whose left half is dark and
right half bright, with four markers per class on each side.
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest

from flim.core import Architecture, LayerSpec, MarkerSet, MultibandImage


def make_toy_image(seed: int = 0) -> MultibandImage:
    rng = np.random.default_rng(seed)
    data = np.full((8, 8), 0.2, dtype=np.float32)
    data[:, 4:] = 0.8
    data += rng.normal(0.0, 0.05, size=data.shape).astype(np.float32)
    return MultibandImage.from_array(data)


def make_toy_markers() -> MarkerSet:
    dark = [(0, 1, 1), (0, 2, 2), (0, 5, 1), (0, 6, 2)]
    bright = [(0, 1, 5), (0, 2, 6), (0, 5, 5), (0, 6, 6)]
    return MarkerSet(np.array(dark + bright), np.array([1] * 4 + [2] * 4))


def toy_layer(**overrides) -> LayerSpec:
    params = dict(
        kernel_size=(3, 3, 1),
        nkernels_per_image=4,
        nkernels_per_marker=2,
        noutput_channels=2,
        pool_type="avg_pool",
        pool_size=(2, 2, 1),
        pool_stride=2,
    )
    params.update(overrides)
    return LayerSpec(**params)


@pytest.fixture
def toy_image():
    return make_toy_image()


@pytest.fixture
def toy_markers():
    return make_toy_markers()


@pytest.fixture
def single_layer_arch():
    return Architecture(layers=(toy_layer(),))

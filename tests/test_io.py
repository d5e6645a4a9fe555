"""
Tests for io.py and the folder-level learning / extraction entry points.
"""
import numpy as np
import pytest
import tifffile
from PIL import Image

from flim.core import (
    ConvolutionEngine,
    InsufficientMarkersError,
    KernelBank,
    adjacency_from_kernel,
    atrous_pool,
    relu,
)
from flim.inference import extract_features, extract_features_from_layer, extract_features_with_bias
from flim.training import learn_layer, learn_model, learn_model_pca
from flim.utils import io
from conftest import make_toy_image, make_toy_markers


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

class TestImages:

    def test_npy_volume_reads_like_tiff(self, tmp_path):
        volume = np.random.default_rng(0).normal(size=(16, 32, 24)).astype(np.float32)
        np.save(str(tmp_path / "vol.npy"), volume)
        tifffile.imwrite(str(tmp_path / "vol.tif"), volume)

        from_npy = io.load_image(str(tmp_path / "vol.npy"))
        from_tif = io.load_image(str(tmp_path / "vol.tif"))
        assert from_npy.data.shape == from_tif.data.shape == (1, 16, 32, 24)
        assert from_npy.is3d
        np.testing.assert_array_equal(from_npy.data[0], volume)
        np.testing.assert_array_equal(from_npy.data, from_tif.data)

    def test_npy_multichannel_and_2d(self, tmp_path):
        np.save(str(tmp_path / "bands.npy"), np.zeros((3, 1, 5, 6)))
        np.save(str(tmp_path / "gray.npy"), np.zeros((5, 6)))
        assert io.load_image(str(tmp_path / "bands.npy")).data.shape == (3, 1, 5, 6)
        assert io.load_image(str(tmp_path / "gray.npy")).data.shape == (1, 1, 5, 6)

    def test_png(self, tmp_path):
        path = tmp_path / "gray.png"
        Image.fromarray(np.full((4, 7), 200, dtype=np.uint8)).save(str(path))
        image = io.load_image(str(path))
        assert image.data.shape == (1, 1, 4, 7)
        assert image.data.max() == 200

    def test_tiff_stack_is_3d(self, tmp_path):
        path = tmp_path / "stack.tif"
        tifffile.imwrite(str(path), np.zeros((3, 4, 5), dtype=np.uint16))
        image = io.load_image(str(path))
        assert image.data.shape == (1, 3, 4, 5)
        assert image.is3d

    def test_missing_and_unsupported(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            io.load_image(str(tmp_path / "missing.npy"))
        path = tmp_path / "notes.txt"
        path.write_text("x")
        with pytest.raises(ValueError):
            io.load_image(str(path))

    def test_image_list_skips_header(self, tmp_path):
        csv_path = tmp_path / "list.csv"
        csv_path.write_text("filename\nb.png\na.npy\n\n")
        assert io.read_image_list(str(csv_path)) == ["b.png", "a.npy"]


class TestMarkers:

    def test_2d_write_then_read(self, tmp_path):
        markers = make_toy_markers()
        path = tmp_path / "toy-seeds.txt"
        io.write_markers(str(path), markers, (1, 8, 8))

        assert path.read_text().splitlines()[0] == "8 8 8"
        loaded = io.read_markers(str(path))
        np.testing.assert_array_equal(loaded.coords, markers.coords)
        np.testing.assert_array_equal(loaded.labels, markers.labels)

    def test_3d_seeds_file(self, tmp_path):
        path = tmp_path / "vol-seeds.txt"
        path.write_text("2 10 20 5\n3 4 1 0 1\n7 8 2 1 2\n")
        markers = io.read_markers(str(path))
        np.testing.assert_array_equal(markers.coords, [[1, 4, 3], [2, 8, 7]])
        np.testing.assert_array_equal(markers.labels, [1, 2])

    def test_seed_count_mismatch(self, tmp_path):
        path = tmp_path / "bad-seeds.txt"
        path.write_text("3 8 8\n1 1 0 1\n")
        with pytest.raises(ValueError):
            io.read_markers(str(path))


class TestParameters:

    def test_kernel_bank_round_trip(self, tmp_path):
        bank = KernelBank(kernels=np.ones((9, 2)), mean=np.zeros(9), stdev=np.ones(9),
                          bias=np.array([0.5, -0.5]))
        io.save_kernel_bank(str(tmp_path), 0, bank)
        assert (tmp_path / "conv1-kernels.npy").exists()
        assert (tmp_path / "conv1-bias.npy").exists()

        loaded = io.load_kernel_bank(str(tmp_path), 0)
        np.testing.assert_array_equal(loaded.kernels, bank.kernels)
        np.testing.assert_array_equal(loaded.bias, bank.bias)

    def test_missing_bank(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            io.load_kernel_bank(str(tmp_path), 2)


# ---------------------------------------------------------------------------
# Folder-level learning and extraction
# ---------------------------------------------------------------------------

@pytest.fixture
def dataset(tmp_path):
    """Two marked training images and one unmarked image."""
    orig_dir = tmp_path / "images"
    markers_dir = tmp_path / "markers"
    orig_dir.mkdir()
    for seed, stem in enumerate(["img0", "img1", "img2"]):
        np.save(str(orig_dir / f"{stem}.npy"), make_toy_image(seed).data)
        if stem != "img2":
            io.write_markers(str(io.markers_path(str(markers_dir), stem)),
                             make_toy_markers(), (1, 8, 8))
    return tmp_path, orig_dir, markers_dir


class TestFolderWorkflow:

    def test_learn_and_extract(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        param_dir = root / "params"
        feat_dir = root / "feats"

        banks = learn_model(str(orig_dir), str(markers_dir), str(param_dir), single_layer_arch)
        assert banks[0].ncols == 2
        assert (param_dir / "conv1-kernels.npy").exists()
        assert (param_dir / "flim.log").exists()

        written = extract_features(str(orig_dir), None, single_layer_arch,
                                   str(param_dir), str(feat_dir))
        assert sorted(p.name for p in written) == [
            "img0_layer1.npy", "img1_layer1.npy", "img2_layer1.npy"]
        assert np.load(str(feat_dir / "img2_layer1.npy")).shape == (2, 1, 4, 4)

    def test_extract_with_bias_folds_banks_without_bias(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        param_dir = root / "params"
        learn_model(str(orig_dir), str(markers_dir), str(param_dir), single_layer_arch)

        extract_features(str(orig_dir), None, single_layer_arch, str(param_dir), str(root / "a"))
        extract_features_with_bias(str(orig_dir), None, single_layer_arch, str(param_dir),
                                   str(root / "b"))
        np.testing.assert_allclose(np.load(str(root / "b" / "img0_layer1.npy")),
                                   np.load(str(root / "a" / "img0_layer1.npy")),
                                   rtol=1e-4, atol=1e-4)

    def test_extract_with_stored_bias(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        param_dir = root / "params"
        learn_model(str(orig_dir), str(markers_dir), str(param_dir), single_layer_arch)
        np.save(str(param_dir / "conv1-bias.npy"), np.array([0.25, -0.25], dtype=np.float32))

        extract_features_with_bias(str(orig_dir), None, single_layer_arch, str(param_dir),
                                   str(root / "feats"))

        bank = io.load_kernel_bank(str(param_dir), 0)
        image = io.load_image(str(orig_dir / "img0.npy"))
        adjacency = adjacency_from_kernel(single_layer_arch.layers[0], dim3d=False)
        raw = ConvolutionEngine().apply(image, bank, adjacency, normalize=False)
        expected = atrous_pool(relu(raw), "avg_pool", (2, 2, 1), 2)
        np.testing.assert_allclose(np.load(str(root / "feats" / "img0_layer1.npy")),
                                   expected.data, rtol=1e-4, atol=1e-4)

    def test_image_list_restricts_images(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        csv_path = root / "list.csv"
        csv_path.write_text("img1.npy\n")
        param_dir = root / "params"
        learn_model_pca(str(orig_dir), str(markers_dir), str(param_dir), single_layer_arch,
                        image_list=str(csv_path))

        written = extract_features(str(orig_dir), str(csv_path), single_layer_arch,
                                   str(param_dir), str(root / "feats"))
        assert [p.name for p in written] == ["img1_layer1.npy"]

    def test_object_mask(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        param_dir = root / "params"
        object_dir = root / "objects"
        object_dir.mkdir()
        mask = np.zeros((8, 8), dtype=np.uint8)
        np.save(str(object_dir / "img0.npy"), mask)
        learn_model(str(orig_dir), str(markers_dir), str(param_dir), single_layer_arch)

        extract_features(str(orig_dir), None, single_layer_arch, str(param_dir),
                         str(root / "feats"), object_dir=str(object_dir))
        assert np.load(str(root / "feats" / "img0_layer1.npy")).sum() == 0

    def test_single_layer_learning_matches_extraction(self, dataset, single_layer_arch):
        root, orig_dir, markers_dir = dataset
        param_dir = root / "params"
        learned_dir = root / "learned"
        extracted_dir = root / "extracted"

        bank = learn_layer(str(orig_dir), str(markers_dir), str(param_dir), 0,
                           single_layer_arch, str(learned_dir))
        assert bank.ncols == 2

        extract_features_from_layer(str(orig_dir), None, single_layer_arch, str(param_dir), 0,
                                    str(extracted_dir))
        for stem in ["img0", "img1"]:
            np.testing.assert_array_equal(
                np.load(str(extracted_dir / f"{stem}_layer1.npy")),
                np.load(str(learned_dir / f"{stem}_layer1.npy")))

    def test_no_marked_images(self, dataset, single_layer_arch):
        root, orig_dir, _ = dataset
        empty = root / "no_markers"
        empty.mkdir()
        with pytest.raises(InsufficientMarkersError):
            learn_model(str(orig_dir), str(empty), str(root / "params"), single_layer_arch)

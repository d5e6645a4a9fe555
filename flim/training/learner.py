"""
Learner class for FLIM.

Learns the kernel bank of every layer from markers, layer by layer, and
saves the parameters.  No gradients are involved: each layer's kernels come
from clustering (or PCA of) marker patches of that layer's input.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from ..core.adjacency import adjacency_from_kernel
from ..core.architecture import Architecture
from ..core.errors import InsufficientMarkersError
from ..core.image import MarkerSet, MultibandImage
from ..core.kernels import KernelBank, KernelEstimator
from ..core.patches import PatchSampler
from ..inference.pipeline import LayerPipeline
from ..utils import io
from ..utils.device import resolve_device


class Learner:
    """
    Marker-based learning of a FLIM network.

    Args:
        arch: FLIM architecture.
        output_dir: Directory for the parameters and the learning log.
        config: Learning configuration dictionary.

    Usage:
        learner = Learner(arch, output_dir="./params")
        banks = learner.learn(images, markers)
    """

    def __init__(
        self,
        arch: Architecture,
        output_dir: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.arch = arch
        self.output_dir = Path(output_dir) if output_dir is not None else None

        # Default configuration
        self.config = {
            'seed': 42,
            'n_init': 10,
            'method': 'kmeans',   # 'kmeans' or 'pca'
            'max_workers': None,
            'device': -1,
        }
        if config is not None:
            self.config.update(config)
        if self.config['method'] not in ('kmeans', 'pca'):
            raise ValueError(f"Unknown learning method: {self.config['method']}")

        self.device = resolve_device(self.config['device'])
        # Full resolution training folds pooling strides into the dilation.
        self.keep_resolution = arch.apply_intrinsic_atrous

        # Logging
        self.logger = logging.getLogger('FLIM')
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            self._setup_logging()

    def _setup_logging(self):
        """Setup logging to file and console."""
        log_file = self.output_dir / 'flim.log'
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # One file handler per log file, one console handler per process.
        handlers = self.logger.handlers
        if not any(getattr(h, 'baseFilename', None) == str(log_file.resolve())
                   for h in handlers):
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if not any(type(h) is logging.StreamHandler for h in handlers):
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        self.logger.setLevel(logging.INFO)

    def _estimator(self, index: int) -> KernelEstimator:
        return KernelEstimator(
            self.arch.layers[index],
            stdev_factor=self.arch.stdev_factor,
            seed=self.config['seed'],
            n_init=self.config['n_init'],
            max_workers=self.config['max_workers'],
        )

    def _layer_markers(self, markers: MarkerSet, index: int) -> MarkerSet:
        """Markers on the grid of layer `index`'s input."""
        if self.keep_resolution:
            return markers
        return markers.scaled(self.arch.stride_product(index))

    def learn_bank(
        self,
        index: int,
        inputs: Sequence[MultibandImage],
        markers: Sequence[MarkerSet],
        names: Sequence[str],
        dim3d: Optional[bool] = None,
    ) -> KernelBank:
        """
        Learn the kernel bank of layer `index` from its inputs and markers.

        Args:
            index: Layer index.
            inputs: Layer input of every training image.
            markers: Markers of every training image, at original resolution.
            names: Image names for logs and errors.
            dim3d: 3D adjacency; defaults to whether the first input is 3D.

        Returns:
            KernelBank with noutput_channels kernels.
        """
        layer = self.arch.layers[index]
        dim3d = inputs[0].is3d if dim3d is None else dim3d
        atrous = self.arch.stride_product(index) if self.keep_resolution else 1
        sampler = PatchSampler(adjacency_from_kernel(layer, dim3d, atrous))

        def sample(i: int):
            return sampler.sample_markers(
                inputs[i], self._layer_markers(markers[i], index), names[i], index)

        with ThreadPoolExecutor(max_workers=self.config['max_workers']) as executor:
            patch_sets = list(executor.map(sample, range(len(inputs))))

        estimator = self._estimator(index)
        if self.config['method'] == 'pca':
            return estimator.estimate_pca(patch_sets, layer_index=index)
        return estimator.estimate(patch_sets, names, layer_index=index)

    def learn(
        self,
        images: Sequence[MultibandImage],
        markers: Sequence[MarkerSet],
        names: Optional[Sequence[str]] = None,
        param_dir: Optional[str] = None,
    ) -> List[KernelBank]:
        """
        Learn every layer of the architecture.

        Args:
            images: Training images.
            markers: One MarkerSet per training image.
            names: Optional image names.
            param_dir: If given, each layer's bank is saved once it is learned.

        Returns:
            One KernelBank per layer.
        """
        if len(images) != len(markers):
            raise ValueError(f"Got {len(images)} images but {len(markers)} marker sets")
        if not images:
            raise InsufficientMarkersError("No training images with markers")
        names = list(names) if names is not None else [str(i) for i in range(len(images))]

        self.logger.info(f"Learning {self.arch.nlayers} layers from {len(images)} images on {self.device}")
        start_time = time.time()

        dim3d = images[0].is3d
        banks: List[KernelBank] = []
        inputs = list(images)
        outputs: List[List[MultibandImage]] = [[] for _ in images]
        for index in range(self.arch.nlayers):
            layer_start = time.time()
            bank = self.learn_bank(index, inputs, markers, names, dim3d)
            banks.append(bank)
            if param_dir is not None:
                io.save_kernel_bank(param_dir, index, bank)

            if index + 1 < self.arch.nlayers:
                pipeline = LayerPipeline(
                    self.arch, banks, device=self.device, keep_resolution=self.keep_resolution)
                skips = self.arch.layers[index].skip_connection
                for i in range(len(inputs)):
                    out = pipeline.run_layer(
                        index, inputs[i], {j: outputs[i][j] for j in skips}, dim3d)
                    outputs[i].append(out)
                    inputs[i] = out

            self.logger.info(
                f"Layer {index + 1}/{self.arch.nlayers}: {bank.ncols} kernels of length "
                f"{bank.dim} in {time.time() - layer_start:.1f}s")

        self.logger.info(f"Learning completed in {time.time() - start_time:.1f}s")
        return banks

    def learn_model(
        self,
        orig_dir: str,
        markers_dir: str,
        param_dir: str,
        image_list: Optional[str] = None,
    ) -> List[KernelBank]:
        """
        Learn the model from the marked images of a folder and save it.

        Every image of `orig_dir` with a <stem>-seeds.txt file in
        `markers_dir` is a training image.
        """
        paths = io.resolve_images(orig_dir, image_list)
        images, markers, names = [], [], []
        for path in tqdm(paths, desc="Loading"):
            seeds = io.markers_path(markers_dir, path.stem)
            if not seeds.exists():
                continue
            images.append(io.load_image(str(path)))
            markers.append(io.read_markers(str(seeds)))
            names.append(path.stem)
        if not images:
            raise InsufficientMarkersError(f"No image of {orig_dir} has markers in {markers_dir}")

        return self.learn(images, markers, names, param_dir=param_dir)

    def learn_layer(
        self,
        activ_dir: str,
        markers_dir: str,
        param_dir: str,
        layer_index: int,
        output_dir: str,
        image_list: Optional[str] = None,
    ) -> KernelBank:
        """
        Learn one layer from saved activations and write its outputs.

        Layer 0 reads original images from `activ_dir`; later layers read
        <stem>_layer{layer_index}.npy (and earlier outputs for skip
        connections).  Outputs are written to `output_dir` as
        <stem>_layer{layer_index + 1}.npy for the next call.
        """
        layer = self.arch.layers[layer_index]
        stems = [
            stem for stem in io.list_layer_stems(activ_dir, layer_index, image_list)
            if io.markers_path(markers_dir, stem).exists()
        ]
        if not stems:
            raise InsufficientMarkersError(
                f"No activation of {activ_dir} has markers in {markers_dir}", layer=layer_index)

        inputs = [io.load_layer_input(activ_dir, stem, layer_index) for stem in stems]
        markers = [io.read_markers(str(io.markers_path(markers_dir, stem))) for stem in stems]
        bank = self.learn_bank(layer_index, inputs, markers, stems)
        io.save_kernel_bank(param_dir, layer_index, bank)

        banks = [None] * layer_index + [bank]
        pipeline = LayerPipeline(
            self.arch, banks, device=self.device, keep_resolution=self.keep_resolution)
        for stem, image in zip(stems, inputs):
            skip_sources = {
                j: io.load_features(str(io.feature_path(activ_dir, stem, j)))
                for j in layer.skip_connection
            }
            out = pipeline.run_layer(layer_index, image, skip_sources)
            io.save_features(str(io.feature_path(output_dir, stem, layer_index)), out)

        self.logger.info(f"Layer {layer_index + 1}: learned {bank.ncols} kernels from {len(stems)} images")
        return bank


def learn_model(
    orig_dir: str,
    markers_dir: str,
    param_dir: str,
    arch: Architecture,
    image_list: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> List[KernelBank]:
    """Learn a FLIM model by marker clustering and save it into `param_dir`."""
    learner = Learner(arch, output_dir=param_dir, config=config)
    return learner.learn_model(orig_dir, markers_dir, param_dir, image_list)


def learn_model_pca(
    orig_dir: str,
    markers_dir: str,
    param_dir: str,
    arch: Architecture,
    image_list: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> List[KernelBank]:
    """Learn a FLIM model whose kernels are principal components of marker patches."""
    config = dict(config or {})
    config['method'] = 'pca'
    learner = Learner(arch, output_dir=param_dir, config=config)
    return learner.learn_model(orig_dir, markers_dir, param_dir, image_list)


def learn_layer(
    activ_dir: str,
    markers_dir: str,
    param_dir: str,
    layer_index: int,
    arch: Architecture,
    output_dir: str,
    image_list: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> KernelBank:
    """Learn one layer from saved activations; see Learner.learn_layer."""
    learner = Learner(arch, output_dir=param_dir, config=config)
    return learner.learn_layer(activ_dir, markers_dir, param_dir, layer_index, output_dir, image_list)

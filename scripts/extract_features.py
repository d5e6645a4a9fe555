"""
Extract features with a learned FLIM model

Usage:
    python scripts/extract_features.py --arch arch.json --param_dir params/ \
        --orig_dir images/ --feat_dir feats/
    python scripts/extract_features.py --arch arch.json --param_dir params/ \
        --orig_dir feats/ --feat_dir feats/ --layer 1
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flim.core import read_architecture
from flim.inference import (
    BatchPlanner,
    DEFAULT_MEMORY_BUDGET,
    FeatureExtractor,
    extract_features_from_layer,
)
from flim.utils import io


def parse_args():
    parser = argparse.ArgumentParser(description='Extract FLIM features')

    parser.add_argument('--arch', type=str, required=True,
                        help='Architecture file (.json or .yaml)')
    parser.add_argument('--param_dir', type=str, required=True,
                        help='Folder of the learned parameters')
    parser.add_argument('--orig_dir', type=str, required=True,
                        help='Folder of input images (or activations with --layer)')
    parser.add_argument('--feat_dir', type=str, required=True,
                        help='Output folder for <stem>_layer{l}.npy features')
    parser.add_argument('--image_list', type=str, default=None,
                        help='Optional CSV restricting the images')
    parser.add_argument('--object_dir', type=str, default=None,
                        help='Optional folder of object masks named like the images')

    parser.add_argument('--layer', type=int, default=None,
                        help='Apply only this layer (0-based) to saved activations')
    parser.add_argument('--all_layers', action='store_true',
                        help='Save the features of every layer, not only the last one')
    parser.add_argument('--with_bias', action='store_true',
                        help='Fold the normalization into kernels and bias')
    parser.add_argument('--memory_gb', type=float, default=DEFAULT_MEMORY_BUDGET / 1024 ** 3,
                        help='Memory budget used to plan batches')
    parser.add_argument('--device', type=int, default=-1,
                        help='CUDA device index, negative for CPU')

    return parser.parse_args()


def main():
    args = parse_args()

    arch = read_architecture(args.arch)

    if args.layer is not None:
        written = extract_features_from_layer(
            args.orig_dir, args.image_list, arch, args.param_dir, args.layer,
            args.feat_dir, args.object_dir, args.device)
        print(f"Layer {args.layer + 1} applied to {len(written)} images. Results in {args.feat_dir}")
        return

    banks = io.load_kernel_banks(args.param_dir, arch.nlayers)
    planner = BatchPlanner(budget_bytes=int(args.memory_gb * 1024 ** 3))
    extractor = FeatureExtractor(
        arch, banks, device=args.device, planner=planner, with_bias=args.with_bias)

    layers = list(range(arch.nlayers)) if args.all_layers else None
    written = extractor.extract_folder(
        args.orig_dir, args.feat_dir, args.image_list, args.object_dir, layers)

    print(f"Feature extraction completed. {len(written)} files in {args.feat_dir}")


if __name__ == '__main__':
    main()

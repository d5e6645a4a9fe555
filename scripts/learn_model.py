"""
Learn a FLIM model from image markers

Usage:
    python scripts/learn_model.py --arch arch.json --orig_dir images/ \
        --markers_dir markers/ --param_dir params/
    python scripts/learn_model.py --arch arch.json --orig_dir images/ \
        --markers_dir markers/ --param_dir params/ --pca
    python scripts/learn_model.py --arch arch.json --activ_dir feats/ \
        --markers_dir markers/ --param_dir params/ --layer 1 --output_dir feats/
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flim.core import read_architecture
from flim.training import Learner


def parse_args():
    parser = argparse.ArgumentParser(description='Learn FLIM kernels from markers')

    # Data arguments
    parser.add_argument('--arch', type=str, required=True,
                        help='Architecture file (.json or .yaml)')
    parser.add_argument('--orig_dir', type=str, default=None,
                        help='Folder of training images')
    parser.add_argument('--markers_dir', type=str, required=True,
                        help='Folder of <stem>-seeds.txt marker files')
    parser.add_argument('--param_dir', type=str, required=True,
                        help='Output folder for the learned parameters')
    parser.add_argument('--image_list', type=str, default=None,
                        help='Optional CSV restricting the training images')

    # Single layer arguments
    parser.add_argument('--layer', type=int, default=None,
                        help='Learn only this layer (0-based) from saved activations')
    parser.add_argument('--activ_dir', type=str, default=None,
                        help='Folder with the inputs of --layer')
    parser.add_argument('--output_dir', type=str, default=None,
                        help='Folder for the outputs of --layer')

    # Learning arguments
    parser.add_argument('--pca', action='store_true',
                        help='Use principal components instead of clustering')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed of the clustering')
    parser.add_argument('--n_init', type=int, default=10,
                        help='Number of k-means restarts')
    parser.add_argument('--num_workers', type=int, default=None,
                        help='Threads used for per-image work')
    parser.add_argument('--device', type=int, default=-1,
                        help='CUDA device index, negative for CPU')

    return parser.parse_args()


def main():
    args = parse_args()

    arch = read_architecture(args.arch)
    print(f"Architecture with {arch.nlayers} layers loaded from {args.arch}")

    config = {
        'seed': args.seed,
        'n_init': args.n_init,
        'method': 'pca' if args.pca else 'kmeans',
        'max_workers': args.num_workers,
        'device': args.device,
    }
    learner = Learner(arch, output_dir=args.param_dir, config=config)

    if args.layer is not None:
        if args.activ_dir is None or args.output_dir is None:
            print("Error: --layer requires --activ_dir and --output_dir")
            sys.exit(1)
        bank = learner.learn_layer(
            args.activ_dir, args.markers_dir, args.param_dir,
            args.layer, args.output_dir, args.image_list)
        print(f"Layer {args.layer + 1}: {bank.ncols} kernels saved to {args.param_dir}")
        print(f"Layer outputs saved to {args.output_dir}")
        return

    if args.orig_dir is None:
        print("Error: Must specify --orig_dir (or --layer with --activ_dir)")
        sys.exit(1)

    banks = learner.learn_model(args.orig_dir, args.markers_dir, args.param_dir, args.image_list)

    print("Learning completed!")
    for index, bank in enumerate(banks):
        print(f"  Layer {index + 1}: {bank.ncols} kernels of length {bank.dim}")
    print(f"Parameters saved to: {args.param_dir}")


if __name__ == '__main__':
    main()

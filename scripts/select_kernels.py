"""
Keep a manual selection of the kernels of a learned layer

Usage:
    python scripts/select_kernels.py --param_dir params/ --layer 0 \
        --selection selected.json --output_dir params_selected/

selected.json holds a list of kernel indices, e.g. [2, 0, 5], or
{"selected_kernels": [2, 0, 5]}.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flim.core.kernels import read_kernel_selection
from flim.utils import io


def parse_args():
    parser = argparse.ArgumentParser(description='Select kernels of a FLIM layer')

    parser.add_argument('--param_dir', type=str, required=True,
                        help='Folder of the learned parameters')
    parser.add_argument('--layer', type=int, required=True,
                        help='Layer index (0-based)')
    parser.add_argument('--selection', type=str, required=True,
                        help='JSON file with the kernel indices to keep')
    parser.add_argument('--output_dir', type=str, required=True,
                        help='Output folder for the reduced parameters')

    return parser.parse_args()


def main():
    args = parse_args()

    selection = read_kernel_selection(args.selection)

    bank = io.load_kernel_bank(args.param_dir, args.layer)
    reduced = bank.select(selection)
    io.save_kernel_bank(args.output_dir, args.layer, reduced)

    print(f"Kept {reduced.ncols} of {bank.ncols} kernels of layer {args.layer + 1}")
    print(f"Saved to {args.output_dir}")
    print("Remember to set noutput_channels of this layer to the new kernel count.")


if __name__ == '__main__':
    main()

"""
Compute device selection.

The device selector is an integer: a negative value selects the host CPU,
a non-negative value selects that CUDA device.  It is a dispatch hint only;
results do not depend on it beyond floating-point tolerance.
"""

import logging

import torch


logger = logging.getLogger('FLIM')

CPU_DEVICE = -1


def resolve_device(device: int = CPU_DEVICE) -> torch.device:
    """
    Map a device index to a torch.device.

    Falls back to the CPU with a warning when the requested CUDA device is
    not available.
    """
    if device < 0:
        return torch.device('cpu')

    if not torch.cuda.is_available():
        logger.warning(f"CUDA is not available; device {device} falls back to CPU")
        return torch.device('cpu')

    if device >= torch.cuda.device_count():
        logger.warning(
            f"CUDA device {device} not found ({torch.cuda.device_count()} available); "
            f"falling back to CPU")
        return torch.device('cpu')

    return torch.device(f'cuda:{device}')

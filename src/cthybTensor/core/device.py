"""Device and dtype utilities.

The Monte Carlo core works with many small matrices, for which the CPU is
the right place. Post-processed results (BaseTensor) can be moved to the
device returned by get_device() with .to(device) before plotting or
further analysis.

LEVEL 1 utility module.
"""

from typing import Optional, Union

import torch


def get_device(device: Optional[Union[str, torch.device]] = None) -> torch.device:
    """Get device with automatic CUDA detection and CPU fallback.

    Args:
        device: Device specification. Can be:
            - None (default): Returns CPU device
            - 'cuda' or 'cpu': String device specification
            - torch.device: Direct torch.device object

    Returns:
        torch.device object, either 'cuda' or 'cpu'

    Examples:
        >>> from cthybTensor.core import get_device
        >>> device = get_device()
        >>> device.type
        'cpu'
    """
    if device is None:
        return torch.device("cpu")

    if isinstance(device, torch.device):
        return device

    if device == "cuda" and not torch.cuda.is_available():
        print("Warning: CUDA requested but not available, using CPU")
        return torch.device("cpu")

    if device not in ("cuda", "cpu"):
        raise ValueError(f"Invalid device: {device}. Use 'cuda', 'cpu', or torch.device")

    return torch.device(device)


def result_dtype(*tensors: torch.Tensor) -> torch.dtype:
    """Common dtype for a product of tensors.

    Real double precision unless any input is complex, in which case the
    result is complex128.
    """
    if any(t.is_complex() for t in tensors):
        return torch.complex128
    return torch.float64


__all__ = ["get_device", "result_dtype"]

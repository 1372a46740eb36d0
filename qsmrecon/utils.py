"""Module for utility functions shared across the QSM pipeline."""

import typing

import numpy as np
import torch

from .exceptions import EmptyMaskError


def wrap_phase(phase: torch.Tensor) -> torch.Tensor:
    """Wraps phase values to the interval [-pi, pi) using PyTorch operations."""
    pi = getattr(torch, 'pi', np.pi)
    return (phase + pi) % (2 * pi) - pi


def round_half_away_from_zero(x: torch.Tensor) -> torch.Tensor:
    """
    Rounds to the nearest integer, with ties rounded away from zero.

    `torch.round` rounds ties to even (0.5 -> 0, 2.5 -> 2). Jump counts and
    kernel sizes use the away-from-zero convention instead (0.5 -> 1,
    -0.5 -> -1, 2.5 -> 3).

    Args:
        x (torch.Tensor): Real-valued input tensor (a 0-d tensor for a scalar).

    Returns:
        torch.Tensor: Rounded tensor with the same dtype as `x`.
    """
    return torch.sign(x) * torch.floor(torch.abs(x) + 0.5)


def round_scalar_half_away_from_zero(x: float) -> int:
    """Scalar version of :func:`round_half_away_from_zero` returning a Python int."""
    return int(round_half_away_from_zero(torch.tensor(float(x), dtype=torch.float64)).item())


def as_float_mask(mask: torch.Tensor, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """
    Converts a boolean or 0/1 mask into a float gate of the requested dtype.

    Args:
        mask (torch.Tensor): Mask tensor, bool or numeric. Non-zero means inside.
        dtype (torch.dtype): Floating point dtype of the returned gate.

    Returns:
        torch.Tensor: Tensor with values in {0, 1}.
    """
    if not isinstance(mask, torch.Tensor):
        raise TypeError("mask must be a PyTorch tensor.")
    return (mask != 0).to(dtype)


def masked_mean(
    volume: torch.Tensor,
    mask: torch.Tensor,
    stage: str = 'masked_mean',
    echo: typing.Optional[int] = None
) -> torch.Tensor:
    """
    Arithmetic mean of `volume` over the voxels where `mask` is set.

    Raises:
        EmptyMaskError: If the mask selects no voxel. The mean over an empty
            set is undefined and must not leak into later stages as NaN.
    """
    selected = volume[mask != 0]
    if selected.numel() == 0:
        raise EmptyMaskError(
            "Mask contains no voxels; mean over an empty set is undefined.",
            stage=stage, echo=echo
        )
    return selected.mean()


def validate_voxel_size(voxel_size: typing.Sequence[float]) -> typing.Tuple[float, float, float]:
    """Returns `voxel_size` as a tuple of three positive floats or raises ValueError."""
    voxel_size = tuple(float(v) for v in voxel_size)
    if len(voxel_size) != 3:
        raise ValueError(f"voxel_size must have three entries, got {len(voxel_size)}.")
    if any(v <= 0 for v in voxel_size):
        raise ValueError(f"voxel_size entries must be positive, got {voxel_size}.")
    return voxel_size

# qsmrecon/field_mapping/reliability.py
"""Residual-based reliability gate for the fitted field map."""

import typing

import torch

from ..utils import round_scalar_half_away_from_zero, validate_voxel_size


def residual_kernel_size(voxel_size: typing.Sequence[float]) -> typing.Tuple[int, int, int]:
    """
    Box kernel side per axis: round(1 / voxel_size) * 2 + 1, always odd.

    With 1 mm voxels this is 3; with 2 mm voxels round(0.5) = 1 (ties away
    from zero) also gives 3.
    """
    voxel_size = validate_voxel_size(voxel_size)
    return tuple(round_scalar_half_away_from_zero(1.0 / v) * 2 + 1 for v in voxel_size)


def box_smooth_3d(volume: torch.Tensor, kernel_size: typing.Sequence[int]) -> torch.Tensor:
    """
    Applies a 3D box (moving average) filter using torch.nn.functional.conv3d.

    Borders are handled by replicating the edge voxels.

    Args:
        volume (torch.Tensor): 3D real tensor, shape (X, Y, Z).
        kernel_size (Sequence[int]): Odd kernel side for each axis.

    Returns:
        torch.Tensor: Smoothed volume with the same shape, dtype and device.
    """
    if not isinstance(volume, torch.Tensor):
        raise TypeError("volume must be a PyTorch tensor.")
    if volume.ndim != 3:
        raise ValueError(f"volume must be a 3D tensor, got shape {tuple(volume.shape)}")
    kernel_size = tuple(int(k) for k in kernel_size)
    if len(kernel_size) != 3 or any(k < 1 or k % 2 == 0 for k in kernel_size):
        raise ValueError(f"kernel_size must be three odd positive integers, got {kernel_size}.")

    kx, ky, kz = kernel_size
    kernel = torch.full((1, 1, kx, ky, kz), 1.0 / (kx * ky * kz), dtype=volume.dtype, device=volume.device)
    # F.pad orders padding from the last dimension backwards.
    padding = (kz // 2, kz // 2, ky // 2, ky // 2, kx // 2, kx // 2)
    padded = torch.nn.functional.pad(volume.unsqueeze(0).unsqueeze(0), padding, mode='replicate')
    return torch.nn.functional.conv3d(padded, kernel).squeeze(0).squeeze(0)


def reliability_mask(
    residual: torch.Tensor,
    voxel_size: typing.Sequence[float],
    threshold: float,
    enabled: bool = True
) -> typing.Tuple[torch.Tensor, typing.Optional[torch.Tensor]]:
    """
    Converts a fit-residual map into a binary reliability gate R.

    The residual is box-smoothed with :func:`residual_kernel_size` and R is 1
    where the smoothed residual is below `threshold`, 0 elsewhere. When
    disabled, R is all ones. Downstream stages consume ``mask * R``.

    Args:
        residual (torch.Tensor): Non-negative residual map, shape (X, Y, Z).
        voxel_size (Sequence[float]): Voxel spacing in mm.
        threshold (float): Residual threshold.
        enabled (bool): If False, returns an all-ones gate.

    Returns:
        tuple[torch.Tensor, Optional[torch.Tensor]]:
            - R (torch.Tensor): Gate with values in {0, 1}, same dtype as `residual`.
            - smoothed (Optional[torch.Tensor]): Smoothed residual, or None when disabled.
    """
    if not enabled:
        return torch.ones_like(residual), None
    smoothed = box_smooth_3d(residual, residual_kernel_size(voxel_size))
    gate = (smoothed < threshold).to(residual.dtype)
    return gate, smoothed

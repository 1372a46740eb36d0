# qsmrecon/field_mapping/echo_fit.py
"""Magnitude-weighted least-squares fit of multi-echo phase against echo time."""

import typing

import torch

# Gyromagnetic ratio of the proton in rad/(s*T).
GYROMAGNETIC_RATIO = 2.675e8

_EPS = 2.220446049250313e-16


def fit_phase_to_echo_times(
    phase_images: torch.Tensor,
    magnitude_images: torch.Tensor,
    echo_times: torch.Tensor,
    fit_intercept: bool = False
) -> typing.Tuple[torch.Tensor, torch.Tensor]:
    """
    Fits phase = rate * TE (+ offset) per voxel, weighting each echo by its magnitude.

    Without an intercept the fit is proportional, consistent with zero phase at
    TE = 0:

        rate = sum(m * phi * t) / (sum(m * t^2) + eps)

    With an intercept, a magnitude-weighted straight line is fitted. In both
    cases the residual is the magnitude-weighted mean squared error scaled by
    the number of echoes:

        residual = sum(m * (phi - fit)^2) / sum(m) * num_echoes

    Voxels with zero total magnitude get a residual of 0. Low-magnitude echoes
    contribute with proportionally less influence; they are not excluded.

    Args:
        phase_images (torch.Tensor): Unwrapped phase in radians, shape (num_echoes, X, Y, Z).
        magnitude_images (torch.Tensor): Magnitude, same shape as `phase_images`.
        echo_times (torch.Tensor): Echo times in seconds, shape (num_echoes,). Any order.
        fit_intercept (bool): Fit a phase offset as well. Defaults to False.

    Returns:
        tuple[torch.Tensor, torch.Tensor]:
            - field (torch.Tensor): Phase accrual rate in rad/s, shape (X, Y, Z).
            - residual (torch.Tensor): Non-negative fit residual, shape (X, Y, Z).
    """
    if not isinstance(phase_images, torch.Tensor):
        raise TypeError("phase_images must be a PyTorch tensor.")
    if not isinstance(magnitude_images, torch.Tensor):
        raise TypeError("magnitude_images must be a PyTorch tensor.")
    if phase_images.shape != magnitude_images.shape:
        raise ValueError("phase_images and magnitude_images must have the same shape.")
    if phase_images.ndim < 2:
        raise ValueError("phase_images must have shape (num_echoes, spatial_dims...).")

    device = phase_images.device
    dtype = phase_images.dtype
    echo_times = torch.as_tensor(echo_times, device=device, dtype=dtype)

    num_echoes = phase_images.shape[0]
    if echo_times.ndim != 1 or echo_times.shape[0] != num_echoes:
        raise ValueError("Number of echo times must match the number of phase images.")
    if fit_intercept and num_echoes < 2:
        raise ValueError("At least two echoes are required to fit an intercept.")

    view_shape = (num_echoes,) + (1,) * (phase_images.ndim - 1)
    te = echo_times.view(view_shape)
    mag = magnitude_images.to(device=device, dtype=dtype)

    if fit_intercept:
        sum_m = mag.sum(dim=0)
        sum_mt = (mag * te).sum(dim=0)
        sum_mtt = (mag * te * te).sum(dim=0)
        sum_mp = (mag * phase_images).sum(dim=0)
        sum_mtp = (mag * te * phase_images).sum(dim=0)
        det = sum_m * sum_mtt - sum_mt**2
        field = (sum_m * sum_mtp - sum_mt * sum_mp) / (det + _EPS)
        offset = (sum_mtt * sum_mp - sum_mt * sum_mtp) / (det + _EPS)
        fitted = field.unsqueeze(0) * te + offset.unsqueeze(0)
    else:
        field = (mag * phase_images * te).sum(dim=0) / ((mag * te * te).sum(dim=0) + _EPS)
        fitted = field.unsqueeze(0) * te

    error = phase_images - fitted
    residual = (error * mag * error).sum(dim=0) / mag.sum(dim=0) * num_echoes
    residual = torch.nan_to_num(residual, nan=0.0, posinf=0.0, neginf=0.0)
    return field, residual


def field_to_ppm(
    field: torch.Tensor,
    field_strength: float,
    gyromagnetic_ratio: float = GYROMAGNETIC_RATIO
) -> torch.Tensor:
    """
    Normalises a field map from rad/s to parts-per-million of the main field.

    ppm = rate / (gamma * B0) * 1e6

    Args:
        field (torch.Tensor): Field map in rad/s.
        field_strength (float): Main field B0 in tesla.
        gyromagnetic_ratio (float): gamma in rad/(s*T). Defaults to 2.675e8.
    """
    if field_strength <= 0:
        raise ValueError(f"field_strength must be positive, got {field_strength}.")
    return field / (gyromagnetic_ratio * field_strength) * 1e6


def ppm_to_field(
    field_ppm: torch.Tensor,
    field_strength: float,
    gyromagnetic_ratio: float = GYROMAGNETIC_RATIO
) -> torch.Tensor:
    """Inverse of :func:`field_to_ppm`: converts ppm back to rad/s."""
    if field_strength <= 0:
        raise ValueError(f"field_strength must be positive, got {field_strength}.")
    return field_ppm * 1e-6 * gyromagnetic_ratio * field_strength

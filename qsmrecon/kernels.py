"""Module for k-space kernels, mask morphology and the linear solver shared by the QSM backends."""

import logging
import typing

import numpy as np
import scipy.ndimage
import torch

from .utils import validate_voxel_size

logger = logging.getLogger(__name__)


def _frequency_grids(
    shape: typing.Sequence[int],
    voxel_size: typing.Sequence[float],
    device=None,
    dtype=torch.float64
) -> typing.Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    kx = torch.fft.fftfreq(shape[0], d=voxel_size[0], device=device, dtype=dtype)
    ky = torch.fft.fftfreq(shape[1], d=voxel_size[1], device=device, dtype=dtype)
    kz = torch.fft.fftfreq(shape[2], d=voxel_size[2], device=device, dtype=dtype)
    return torch.meshgrid(kx, ky, kz, indexing='ij')


def dipole_kernel(
    shape: typing.Sequence[int],
    voxel_size: typing.Sequence[float],
    orientation: typing.Sequence[float] = (0.0, 0.0, 1.0),
    device=None,
    dtype=torch.float64
) -> torch.Tensor:
    """
    Unit dipole response in k-space, unshifted (DC at index 0).

        D(k) = 1/3 - (k . b)^2 / |k|^2,   D(0) = 0

    so that ``field_ppm = ifftn(D * fftn(chi_ppm))``.

    Args:
        shape (Sequence[int]): Volume shape (X, Y, Z).
        voxel_size (Sequence[float]): Voxel spacing in mm.
        orientation (Sequence[float]): Main field direction in image coordinates
            (the slice-normal projection); normalised internally.

    Returns:
        torch.Tensor: Real tensor of shape `shape`.
    """
    voxel_size = validate_voxel_size(voxel_size)
    b = torch.as_tensor(orientation, dtype=dtype, device=device)
    norm = torch.linalg.norm(b)
    if b.shape != (3,) or norm == 0:
        raise ValueError(f"orientation must be a non-zero 3-vector, got {orientation}.")
    b = b / norm

    KX, KY, KZ = _frequency_grids(shape, voxel_size, device=device, dtype=dtype)
    k_dot_b = KX * b[0] + KY * b[1] + KZ * b[2]
    k2 = KX**2 + KY**2 + KZ**2
    k2[0, 0, 0] = 1.0
    D = 1.0 / 3.0 - k_dot_b**2 / k2
    D[0, 0, 0] = 0.0
    return D


def sphere_kernel(
    shape: typing.Sequence[int],
    voxel_size: typing.Sequence[float],
    radius: float,
    device=None,
    dtype=torch.float64
) -> torch.Tensor:
    """
    Binary sphere of `radius` mm centred on voxel (0, 0, 0) with periodic wrap-around.

    The sphere always contains at least the centre voxel.
    """
    voxel_size = validate_voxel_size(voxel_size)
    coords = []
    for n, d in zip(shape, voxel_size):
        # Signed integer offsets 0, 1, ..., -2, -1 in FFT order.
        offsets = torch.fft.fftfreq(n, d=1.0 / n, device=device, dtype=dtype)
        coords.append(offsets * d)
    X, Y, Z = torch.meshgrid(*coords, indexing='ij')
    return ((X**2 + Y**2 + Z**2) <= radius**2).to(dtype)


def smv_kernel(
    shape: typing.Sequence[int],
    voxel_size: typing.Sequence[float],
    radius: float,
    device=None,
    dtype=torch.float64
) -> typing.Tuple[torch.Tensor, int]:
    """
    Spherical mean value kernel in k-space.

    Returns:
        tuple[torch.Tensor, int]: Real k-space kernel S (S(0) = 1) and the number
        of voxels in the sphere.
    """
    sphere = sphere_kernel(shape, voxel_size, radius, device=device, dtype=dtype)
    count = int(sphere.sum().item())
    S = torch.fft.fftn(sphere / count).real
    return S, count


def convolve_kspace(volume: torch.Tensor, kernel_k: torch.Tensor) -> torch.Tensor:
    """Circular convolution of a real volume with a real k-space kernel."""
    return torch.fft.ifftn(kernel_k * torch.fft.fftn(volume)).real


def smv_erode(mask: torch.Tensor, smv_k: torch.Tensor, count: int) -> torch.Tensor:
    """
    Erodes `mask` by the SMV sphere: keeps voxels whose whole sphere lies in the mask.
    """
    coverage = convolve_kspace((mask != 0).to(smv_k.dtype), smv_k)
    return (coverage > 1.0 - 0.5 / count).to(smv_k.dtype)


def erode_mask(mask: torch.Tensor, layers: int = 1) -> torch.Tensor:
    """
    Removes `layers` boundary layers (6-connectivity) from a binary mask.

    Voxels on the volume border count as boundary voxels.
    """
    if layers <= 0:
        return (mask != 0).to(mask.dtype if mask.is_floating_point() else torch.float32)
    structure = scipy.ndimage.generate_binary_structure(3, 1)
    eroded = scipy.ndimage.binary_erosion(
        (mask != 0).cpu().numpy(), structure=structure, iterations=layers, border_value=0
    )
    dtype = mask.dtype if mask.is_floating_point() else torch.float32
    return torch.from_numpy(eroded.astype(np.float64)).to(device=mask.device, dtype=dtype)


def conjugate_gradient(
    apply_A: typing.Callable[[torch.Tensor], torch.Tensor],
    b: torch.Tensor,
    x0: typing.Optional[torch.Tensor] = None,
    max_iter: int = 100,
    tol: float = 1e-6
) -> torch.Tensor:
    """
    Solves A x = b for a symmetric positive semi-definite operator A.

    Args:
        apply_A (Callable): Function computing A @ x for a tensor shaped like `b`.
        b (torch.Tensor): Right-hand side.
        x0 (torch.Tensor, optional): Initial guess; zeros by default.
        max_iter (int): Maximum number of iterations.
        tol (float): Stop when ||r|| / ||b|| falls below this value.

    Returns:
        torch.Tensor: Approximate solution with the shape of `b`.
    """
    x = torch.zeros_like(b) if x0 is None else x0.clone()
    r = b - apply_A(x)
    p = r.clone()
    rs_old = torch.sum(r * r)
    b_norm = torch.sqrt(torch.sum(b * b))
    if b_norm == 0:
        return x

    for i in range(max_iter):
        Ap = apply_A(p)
        denom = torch.sum(p * Ap)
        if denom <= 0:
            break
        alpha = rs_old / denom
        x = x + alpha * p
        r = r - alpha * Ap
        rs_new = torch.sum(r * r)
        if torch.sqrt(rs_new) / b_norm < tol:
            logger.debug("CG converged at iteration %d", i + 1)
            break
        p = r + (rs_new / rs_old) * p
        rs_old = rs_new
    return x

# qsmrecon/background_removal/lbv.py
"""Laplacian boundary value (LBV) background field removal."""

import logging
import typing

import torch

from .base import BackgroundRemover, BackgroundResult
from ..kernels import erode_mask
from ..utils import as_float_mask, validate_voxel_size

logger = logging.getLogger(__name__)


def solve_harmonic(
    values: torch.Tensor,
    fixed: torch.Tensor,
    free: torch.Tensor,
    voxel_size: typing.Sequence[float],
    tol: float = 1e-5,
    max_iter: int = 5000
) -> torch.Tensor:
    """
    Computes a harmonic field on `free` voxels by Jacobi iteration.

    Voxels in `fixed` keep their `values` (Dirichlet condition). Free voxels
    are repeatedly replaced by the voxel-size weighted average of their six
    neighbours inside ``fixed | free``; neighbours outside that domain are
    ignored, which gives a zero-flux condition on the outer boundary. Free
    voxels must not touch the volume border.

    Args:
        values (torch.Tensor): Field providing the Dirichlet values, shape (X, Y, Z).
        fixed (torch.Tensor): 0/1 mask of Dirichlet voxels.
        free (torch.Tensor): 0/1 mask of voxels to solve for.
        voxel_size (Sequence[float]): Voxel spacing in mm.
        tol (float): Stop when ||update|| / ||field on free voxels|| falls below this.
        max_iter (int): Maximum number of Jacobi sweeps.

    Returns:
        torch.Tensor: Field equal to `values` on `fixed`, harmonic on `free`, zero elsewhere.
    """
    dtype = values.dtype
    fixed = (fixed != 0).to(dtype)
    free = (free != 0).to(dtype) * (1 - fixed)
    domain = torch.clamp(fixed + free, max=1.0)
    free_bool = free != 0

    field = values * fixed
    if fixed.sum() > 0:
        field = field + free * values[fixed != 0].mean()
    weights = [1.0 / (d * d) for d in voxel_size]

    denominator = torch.zeros_like(values)
    for dim, w in enumerate(weights):
        for shift in (1, -1):
            denominator = denominator + w * torch.roll(domain, shifts=shift, dims=dim)
    denominator = torch.clamp(denominator, min=1e-12)

    for i in range(max_iter):
        numerator = torch.zeros_like(values)
        for dim, w in enumerate(weights):
            for shift in (1, -1):
                numerator = numerator + w * torch.roll(field * domain, shifts=shift, dims=dim)
        updated = torch.where(free_bool, numerator / denominator, field)
        change = torch.linalg.norm((updated - field)[free_bool])
        scale = torch.linalg.norm(updated[free_bool])
        field = updated
        if change <= tol * (scale + 1e-12):
            logger.debug("Harmonic solve converged after %d sweeps", i + 1)
            break
    return field * domain


class LBVRemover(BackgroundRemover):
    """
    Laplacian boundary value background removal.

    The background field is the harmonic function inside the mask that equals
    the total field on the mask boundary. It is subtracted from the total
    field and `peel` further boundary layers are discarded from the result.
    """

    name = 'lbv'

    def __init__(self, tol: float = 0.01, peel: int = 2, max_iter: int = 5000):
        if tol <= 0:
            raise ValueError("tol must be positive.")
        if peel < 0:
            raise ValueError("peel must be non-negative.")
        self.tol = tol
        self.peel = peel
        self.max_iter = max_iter

    def remove_background(
        self,
        field_ppm: torch.Tensor,
        mask: torch.Tensor,
        voxel_size: typing.Sequence[float],
        magnitude: typing.Optional[torch.Tensor] = None,
        orientation: typing.Sequence[float] = (0.0, 0.0, 1.0)
    ) -> BackgroundResult:
        self._check_inputs(field_ppm, mask)
        voxel_size = validate_voxel_size(voxel_size)
        dtype = field_ppm.dtype if field_ppm.is_floating_point() else torch.float64

        mask_f = as_float_mask(mask, dtype)
        interior = erode_mask(mask_f, 1)
        boundary = mask_f - interior
        total = field_ppm.to(dtype) * mask_f

        # Jacobi stops on the relative update, which is far smaller than the relative error.
        background = solve_harmonic(
            total, boundary, interior, voxel_size, tol=self.tol * 1e-3, max_iter=self.max_iter
        )
        peeled = erode_mask(interior, self.peel)
        local_field = (total - background) * peeled
        refined_mask = (local_field != 0).to(dtype)
        return BackgroundResult(local_field, refined_mask)

# qsmrecon/background_removal/pdf.py
"""Projection onto dipole fields (PDF) background field removal."""

import logging
import typing

import torch

from .base import BackgroundRemover, BackgroundResult
from ..kernels import conjugate_gradient, convolve_kspace, dipole_kernel
from ..utils import as_float_mask, validate_voxel_size

logger = logging.getLogger(__name__)


class PDFRemover(BackgroundRemover):
    """
    Projection onto dipole fields.

    The background field is modelled as the field of dipole sources located
    outside the mask. Their susceptibility is fitted to the total field inside
    the mask by weighted least squares:

        argmin_chi || W (f - M D (1 - M) chi) ||^2

    where W is the normalised reference magnitude on the mask (or the mask
    itself when no magnitude is given). The fitted background field is then
    subtracted from the total field.
    """

    name = 'pdf'

    def __init__(self, tol: float = 0.1, max_iter: int = 30):
        if tol <= 0:
            raise ValueError("tol must be positive.")
        if max_iter < 1:
            raise ValueError("max_iter must be at least 1.")
        self.tol = tol
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
        device = field_ppm.device

        mask_f = as_float_mask(mask, dtype)
        outside = 1.0 - mask_f
        total = field_ppm.to(dtype) * mask_f

        weights = mask_f
        if magnitude is not None:
            if magnitude.shape != field_ppm.shape:
                raise ValueError("Magnitude dimensions must match the field map.")
            mag = torch.abs(magnitude.to(dtype)) * mask_f
            peak = mag.max()
            if peak > 0:
                weights = mag / peak
        weights_sq = weights * weights

        D = dipole_kernel(field_ppm.shape, voxel_size, orientation, device=device, dtype=dtype)

        def normal_operator(chi: torch.Tensor) -> torch.Tensor:
            # D is real and symmetric in k-space, so D^H = D.
            return outside * convolve_kspace(weights_sq * convolve_kspace(outside * chi, D), D)

        rhs = outside * convolve_kspace(weights_sq * total, D)
        chi_outside = conjugate_gradient(normal_operator, rhs, max_iter=self.max_iter, tol=self.tol)

        background = convolve_kspace(outside * chi_outside, D)
        local_field = (total - background) * mask_f
        logger.debug("%s: background field fitted on %d voxels", self.name, int(mask_f.sum().item()))
        return BackgroundResult(local_field, mask_f)

# qsmrecon/background_removal/sharp.py
"""SHARP and RESHARP background field removal using spherical mean value filtering."""

import logging
import typing

import torch

from .base import BackgroundRemover, BackgroundResult
from ..kernels import conjugate_gradient, convolve_kspace, smv_erode, smv_kernel
from ..utils import as_float_mask, validate_voxel_size

logger = logging.getLogger(__name__)


class SHARPRemover(BackgroundRemover):
    """
    Sophisticated Harmonic Artifact Reduction for Phase data.

    The background field is harmonic inside the mask, so it is removed by the
    high-pass operator (delta - SMV). The filtered field is restricted to the
    mask eroded by the SMV sphere and deconvolved with a truncated inverse
    (frequencies where |1 - S| < `t_svd` are discarded).
    """

    name = 'sharp'

    def __init__(self, smv_radius: float = 3.0, t_svd: float = 0.1):
        if smv_radius <= 0:
            raise ValueError("smv_radius must be positive.")
        if t_svd <= 0:
            raise ValueError("t_svd must be positive.")
        self.smv_radius = smv_radius
        self.t_svd = t_svd

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

        S, count = smv_kernel(field_ppm.shape, voxel_size, self.smv_radius, device=device, dtype=dtype)
        high_pass = 1.0 - S
        mask_f = as_float_mask(mask, dtype)
        mask_ero = smv_erode(mask_f, S, count)
        logger.debug("%s: %d voxels remain after SMV erosion", self.name, int(mask_ero.sum().item()))

        filtered = convolve_kspace(field_ppm.to(dtype) * mask_f, high_pass) * mask_ero

        inverse = torch.zeros_like(high_pass)
        keep = torch.abs(high_pass) > self.t_svd
        inverse[keep] = 1.0 / high_pass[keep]
        local_field = convolve_kspace(filtered, inverse) * mask_ero
        return BackgroundResult(local_field, mask_ero)


class RESHARPRemover(BackgroundRemover):
    """
    Regularization-Enabled SHARP.

    Solves ``argmin_x ||M C x - M C f||^2 + tik_reg ||x||^2`` with C = delta - SMV
    and M the SMV-eroded mask, by conjugate gradients on the normal equations.
    """

    name = 'resharp'

    def __init__(
        self,
        smv_radius: float = 3.0,
        tik_reg: float = 1e-4,
        max_iter: int = 200,
        tol: float = 1e-6
    ):
        if smv_radius <= 0:
            raise ValueError("smv_radius must be positive.")
        if tik_reg < 0:
            raise ValueError("tik_reg must be non-negative.")
        self.smv_radius = smv_radius
        self.tik_reg = tik_reg
        self.max_iter = max_iter
        self.tol = tol

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

        S, count = smv_kernel(field_ppm.shape, voxel_size, self.smv_radius, device=device, dtype=dtype)
        high_pass = 1.0 - S
        mask_f = as_float_mask(mask, dtype)
        mask_ero = smv_erode(mask_f, S, count)
        logger.debug("%s: %d voxels remain after SMV erosion", self.name, int(mask_ero.sum().item()))

        def normal_operator(x: torch.Tensor) -> torch.Tensor:
            # C is real and symmetric in k-space, so C^H = C.
            return convolve_kspace(mask_ero * convolve_kspace(x, high_pass), high_pass) + self.tik_reg * x

        rhs = convolve_kspace(mask_ero * convolve_kspace(field_ppm.to(dtype) * mask_f, high_pass), high_pass)
        solution = conjugate_gradient(normal_operator, rhs, max_iter=self.max_iter, tol=self.tol)
        return BackgroundResult(solution * mask_ero, mask_ero)

# qsmrecon/background_removal/esharp.py
"""E-SHARP: RESHARP with harmonic extension of the background field to the mask edge."""

import typing

import numpy as np
import scipy.ndimage
import torch

from .base import BackgroundRemover, BackgroundResult
from .lbv import solve_harmonic
from .sharp import RESHARPRemover
from ..kernels import erode_mask
from ..utils import as_float_mask, validate_voxel_size


def _ellipsoid_structure(radius: typing.Sequence[int]) -> np.ndarray:
    rx, ry, rz = radius
    x, y, z = np.ogrid[-rx:rx + 1, -ry:ry + 1, -rz:rz + 1]
    return (x / rx) ** 2 + (y / ry) ** 2 + (z / rz) ** 2 <= 1.0


class ESHARPRemover(BackgroundRemover):
    """
    Edge-extended SHARP.

    The outermost voxel layer of the mask is shaved off, RESHARP runs on the
    shaved mask, and the background field it implies on the SMV-reduced mask
    is extended harmonically into the band of voxels RESHARP lost, up to
    `radius` voxels away. The local field is then defined on the reduced mask
    plus the recovered band.
    """

    name = 'esharp'

    def __init__(
        self,
        smv_radius: float = 3.0,
        tik_reg: float = 1e-4,
        max_iter: int = 200,
        radius: typing.Sequence[int] = (10, 10, 5),
        extension_tol: float = 1e-5
    ):
        self.resharp = RESHARPRemover(smv_radius=smv_radius, tik_reg=tik_reg, max_iter=max_iter)
        self.radius = tuple(int(r) for r in radius)
        if len(self.radius) != 3 or any(r < 1 for r in self.radius):
            raise ValueError(f"radius must be three positive integers, got {radius}.")
        self.extension_tol = extension_tol

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

        total = field_ppm.to(dtype) * as_float_mask(mask, dtype)
        # The outermost phase voxels of the mask are not trusted.
        mask_shaved = erode_mask(as_float_mask(total != 0, dtype), 1)
        total = total * mask_shaved

        reduced_local, mask_reduced = self.resharp.remove_background(
            total, mask_shaved, voxel_size, magnitude=magnitude, orientation=orientation
        )
        reduced_background = mask_reduced * (total - reduced_local)

        reach = scipy.ndimage.binary_dilation(
            (mask_reduced != 0).cpu().numpy(), structure=_ellipsoid_structure(self.radius)
        )
        reach = torch.from_numpy(reach.astype(np.float64)).to(device=total.device, dtype=dtype)
        band = reach * mask_shaved * (1 - mask_reduced)

        background = solve_harmonic(
            reduced_background, mask_reduced, band, voxel_size, tol=self.extension_tol
        )
        refined_mask = torch.clamp(mask_reduced + band, max=1.0)
        local_field = (total - background) * refined_mask
        return BackgroundResult(local_field, refined_mask)

# qsmrecon/background_removal/base.py
"""Interface for background field removal backends."""

import abc
import typing

import torch


class BackgroundResult(typing.NamedTuple):
    """
    Output of a background field removal backend.

    Attributes:
        local_field (torch.Tensor): Local (tissue) field in ppm, zero outside `mask`.
        mask (torch.Tensor): Refined binary mask on which the local field is valid.
    """
    local_field: torch.Tensor
    mask: torch.Tensor


class BackgroundRemover(abc.ABC):
    """
    Abstract base class for background field removal.

    Implementations must not modify their inputs, so several backends can be
    run on the same field map.
    """

    #: Name used in configuration, logs and output directories.
    name: str = 'background'

    @abc.abstractmethod
    def remove_background(
        self,
        field_ppm: torch.Tensor,
        mask: torch.Tensor,
        voxel_size: typing.Sequence[float],
        magnitude: typing.Optional[torch.Tensor] = None,
        orientation: typing.Sequence[float] = (0.0, 0.0, 1.0)
    ) -> BackgroundResult:
        """
        Separates the local field from the background field.

        Args:
            field_ppm (torch.Tensor): Total field map in ppm, shape (X, Y, Z).
            mask (torch.Tensor): Binary mask (tissue mask times reliability gate).
            voxel_size (Sequence[float]): Voxel spacing in mm.
            magnitude (torch.Tensor, optional): Reference magnitude for weighting.
            orientation (Sequence[float]): Main field direction in image coordinates.

        Returns:
            BackgroundResult: Local field and refined mask.
        """
        pass

    def __call__(self, field_ppm, mask, voxel_size, magnitude=None, orientation=(0.0, 0.0, 1.0)) -> BackgroundResult:
        return self.remove_background(field_ppm, mask, voxel_size, magnitude=magnitude, orientation=orientation)

    @staticmethod
    def _check_inputs(field_ppm: torch.Tensor, mask: torch.Tensor) -> None:
        if not isinstance(field_ppm, torch.Tensor) or not isinstance(mask, torch.Tensor):
            raise TypeError("field_ppm and mask must be PyTorch tensors.")
        if field_ppm.ndim != 3:
            raise ValueError(f"field_ppm must be a 3D tensor, got shape {tuple(field_ppm.shape)}")
        if mask.shape != field_ppm.shape:
            raise ValueError("Mask dimensions must match the field map.")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"

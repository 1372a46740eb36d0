# qsmrecon/dipole_inversion/base.py
"""Interface for dipole inversion solvers."""

import abc
import typing

import torch


class DipoleInverter(abc.ABC):
    """
    Abstract base class for solvers mapping a local field to susceptibility.
    """

    #: Name used in logs and output file names.
    name: str = 'inversion'

    @abc.abstractmethod
    def invert(
        self,
        local_field: torch.Tensor,
        mask: torch.Tensor,
        voxel_size: typing.Sequence[float],
        magnitude: typing.Optional[torch.Tensor] = None,
        orientation: typing.Sequence[float] = (0.0, 0.0, 1.0)
    ) -> torch.Tensor:
        """
        Estimates the susceptibility map whose dipole field best explains `local_field`.

        Args:
            local_field (torch.Tensor): Local field in ppm, shape (X, Y, Z).
            mask (torch.Tensor): Binary mask on which the local field is valid.
            voxel_size (Sequence[float]): Voxel spacing in mm.
            magnitude (torch.Tensor, optional): Reference magnitude used as data weight.
            orientation (Sequence[float]): Main field direction in image coordinates.

        Returns:
            torch.Tensor: Susceptibility in ppm, zero outside `mask`.
        """
        pass

    def __call__(self, local_field, mask, voxel_size, magnitude=None, orientation=(0.0, 0.0, 1.0)) -> torch.Tensor:
        return self.invert(local_field, mask, voxel_size, magnitude=magnitude, orientation=orientation)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"

# qsmrecon/phase_unwrapping/base.py
"""Common interface shared by the per-echo phase unwrapping strategies."""

import abc
import typing

import numpy as np
import torch

from ..utils import as_float_mask, masked_mean, round_half_away_from_zero


class UnwrapResult(typing.NamedTuple):
    """
    Output of a phase unwrapping call.

    Attributes:
        unwrapped_phase (torch.Tensor): Unwrapped phase in radians, same shape as the input.
        reliability (Optional[torch.Tensor]): Per-voxel reliability score, same shape as
            `unwrapped_phase`, or None for strategies that do not produce one.
    """
    unwrapped_phase: torch.Tensor
    reliability: typing.Optional[torch.Tensor] = None


class PhaseUnwrapper(abc.ABC):
    """
    Abstract base class for spatial phase unwrapping strategies.

    A strategy unwraps a single echo at a time. Implementations must not keep
    mutable state between calls so that several echoes can be unwrapped
    concurrently with the same instance.
    """

    #: Short name used in configuration and log messages.
    name: str = 'unwrapper'
    #: Whether `unwrap` returns a reliability map.
    produces_reliability: bool = False

    @abc.abstractmethod
    def unwrap(
        self,
        wrapped_phase: torch.Tensor,
        mask: torch.Tensor,
        voxel_size: typing.Sequence[float],
        magnitude: typing.Optional[torch.Tensor] = None,
        echo: typing.Optional[int] = None
    ) -> UnwrapResult:
        """
        Unwraps one 3D phase volume.

        Args:
            wrapped_phase (torch.Tensor): Wrapped phase in radians, range [-pi, pi). Shape (X, Y, Z).
            mask (torch.Tensor): Binary mask with the same shape. Voxels outside it are zeroed.
            voxel_size (Sequence[float]): Voxel spacing (dx, dy, dz) in mm.
            magnitude (torch.Tensor, optional): Magnitude of the same echo, used as a quality guide.
            echo (int, optional): 1-based echo number, used only for diagnostics.

        Returns:
            UnwrapResult: Unwrapped phase and optional reliability map.
        """
        pass

    def __call__(self, wrapped_phase, mask, voxel_size, magnitude=None, echo=None) -> UnwrapResult:
        return self.unwrap(wrapped_phase, mask, voxel_size, magnitude=magnitude, echo=echo)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"


def recenter_phase(
    unwrapped_phase: torch.Tensor,
    mask: torch.Tensor,
    echo: typing.Optional[int] = None
) -> torch.Tensor:
    """
    Removes the global 2*pi offset left by a path-following unwrapper.

    The nearest multiple of 2*pi to the mean phase inside the mask is
    subtracted from the whole volume, which is then re-masked. This only
    removes the arbitrary offset of the integration origin; consistency
    between echoes is handled by `qsmrecon.field_mapping.correct_inter_echo_jumps`.

    Args:
        unwrapped_phase (torch.Tensor): Unwrapped phase volume, shape (X, Y, Z).
        mask (torch.Tensor): Binary mask of the same shape.
        echo (int, optional): 1-based echo number for error context.

    Returns:
        torch.Tensor: Recentred and masked phase volume.

    Raises:
        EmptyMaskError: If the mask is empty.
    """
    if unwrapped_phase.shape != mask.shape:
        raise ValueError(
            f"Mask shape {tuple(mask.shape)} must match phase shape {tuple(unwrapped_phase.shape)}."
        )
    two_pi = 2 * getattr(torch, 'pi', np.pi)
    mean_phase = masked_mean(unwrapped_phase, mask, stage='phase_unwrapping', echo=echo)
    offset = round_half_away_from_zero(mean_phase / two_pi) * two_pi
    return (unwrapped_phase - offset) * as_float_mask(mask, unwrapped_phase.dtype)

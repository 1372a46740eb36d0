# qsmrecon/field_mapping/jump_correction.py
"""Correction of inter-echo 2*pi jumps left by per-echo spatial unwrapping."""

import logging
import typing

import numpy as np
import torch

from ..config import READOUTS
from ..utils import as_float_mask, masked_mean, round_half_away_from_zero

logger = logging.getLogger(__name__)


def correct_inter_echo_jumps(
    unwrapped_phase: torch.Tensor,
    mask: torch.Tensor,
    readout: str = 'unipolar',
    inplace: bool = False
) -> typing.Tuple[torch.Tensor, typing.Dict[int, int]]:
    """
    Removes whole multiples of 2*pi introduced independently per echo by unwrapping.

    Phase is assumed to accrue linearly with echo time. The first two echoes
    define the per-echo increment ``diff = phase[1] - phase[0]`` (halved for a
    bipolar readout). For every later echo ``e`` (0-based index ``e >= 2``) the
    mean deviation from the linear extrapolation

        ``mean(phase[e] - phase[0] - e * diff)`` over the mask

    is rounded to the nearest multiple of 2*pi, ties away from zero, and that
    multiple is subtracted. The first two echoes are never modified. Echoes
    are processed in order and each uses the original first two echoes as the
    reference.

    Args:
        unwrapped_phase (torch.Tensor): Spatially unwrapped phase, shape (num_echoes, X, Y, Z).
        mask (torch.Tensor): Binary mask, shape (X, Y, Z). Only masked voxels
            enter the mean; corrected echoes are zeroed outside it.
        readout (str): 'unipolar' or 'bipolar'. Defaults to 'unipolar'.
        inplace (bool): If True, `unwrapped_phase` is overwritten and returned.

    Returns:
        tuple[torch.Tensor, dict[int, int]]:
            - corrected (torch.Tensor): Phase stack with the jumps removed.
            - njumps (dict[int, int]): 2*pi jump count per 1-based echo number (3..E).

    Raises:
        EmptyMaskError: If the mask contains no voxel.
    """
    if not isinstance(unwrapped_phase, torch.Tensor):
        raise TypeError("unwrapped_phase must be a PyTorch tensor.")
    if not isinstance(mask, torch.Tensor):
        raise TypeError("mask must be a PyTorch tensor.")
    if unwrapped_phase.ndim != 4:
        raise ValueError("unwrapped_phase must have shape (num_echoes, X, Y, Z).")
    if unwrapped_phase.shape[0] < 2:
        raise ValueError("At least two echoes are required for jump correction.")
    if mask.shape != unwrapped_phase.shape[1:]:
        raise ValueError("Mask dimensions must match spatial dimensions of phase images.")
    readout = str(readout).lower()
    if readout not in READOUTS:
        raise ValueError(f"readout must be one of {READOUTS}, got '{readout}'.")

    corrected = unwrapped_phase if inplace else unwrapped_phase.clone()
    mask = mask.to(corrected.device)
    mask_gate = as_float_mask(mask, corrected.dtype)
    two_pi = 2 * getattr(torch, 'pi', np.pi)

    diff = corrected[1] - corrected[0]
    if readout == 'bipolar':
        diff = diff / 2

    njumps = {}
    for e in range(2, corrected.shape[0]):
        deviation = corrected[e] - corrected[0] - e * diff
        mean_deviation = masked_mean(deviation, mask, stage='jump_correction', echo=e + 1)
        njump = int(round_half_away_from_zero(mean_deviation / two_pi).item())
        logger.info("    %d 2pi jumps for TE%d", njump, e + 1)
        corrected[e] = (corrected[e] - njump * two_pi) * mask_gate
        njumps[e + 1] = njump

    return corrected, njumps

# qsmrecon/masking.py
"""Tissue mask generation: magnitude thresholding or FSL BET."""

import glob
import logging
import os
import shutil
import subprocess
import typing

import numpy as np
import torch

from .exceptions import QSMError

logger = logging.getLogger(__name__)


def create_mask_from_magnitude(
    magnitude_image: typing.Union[torch.Tensor, np.ndarray],
    threshold_factor: float = 0.1
) -> torch.Tensor:
    """
    Creates a simple binary mask by thresholding a magnitude image.

    Args:
        magnitude_image (torch.Tensor | np.ndarray): Input magnitude image.
        threshold_factor (float): Fraction of the maximum intensity used as threshold.
                                  Defaults to 0.1.

    Returns:
        torch.Tensor: Boolean mask with the shape of `magnitude_image`.
    """
    if isinstance(magnitude_image, np.ndarray):
        magnitude_image = torch.from_numpy(magnitude_image)
    if not isinstance(magnitude_image, torch.Tensor):
        raise TypeError("Magnitude image must be a PyTorch tensor or NumPy array.")
    if not 0 <= threshold_factor < 1:
        raise ValueError("threshold_factor must lie in [0, 1).")
    if magnitude_image.numel() == 0:
        return torch.zeros_like(magnitude_image, dtype=torch.bool)

    magnitude = torch.abs(magnitude_image)
    max_val = magnitude.max()
    if max_val == 0:
        return torch.zeros_like(magnitude, dtype=torch.bool)
    return magnitude > threshold_factor * max_val


def bet_mask(
    magnitude_path: str,
    out_prefix: str,
    bet_thr: float = 0.4,
    bet_smooth: float = 2.0,
    command: str = 'bet2',
    timeout: typing.Optional[float] = None
) -> str:
    """
    Runs FSL `bet2` on a magnitude NIfTI and returns the path of the binary mask.

    The call is ``bet2 <magnitude> <out_prefix> -f <bet_thr> -m -w <bet_smooth>``;
    bet2 writes ``<out_prefix>_mask.nii`` or ``<out_prefix>_mask.nii.gz``
    depending on the FSL output type.

    Raises:
        QSMError: If bet2 is missing, fails or produces no mask.
    """
    if shutil.which(command) is None and not os.path.exists(command):
        raise QSMError(f"Brain extraction tool '{command}' was not found on PATH.", stage='masking')

    argv = [command, magnitude_path, out_prefix, '-f', str(bet_thr), '-m', '-w', str(bet_smooth)]
    logger.info("--> extract brain volume and generate mask ...")
    logger.debug("Running %s", ' '.join(argv))
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise QSMError(f"{command} timed out after {timeout} s.", stage='masking') from exc
    if completed.stdout:
        logger.debug("%s stdout: %s", command, completed.stdout.strip())
    if completed.returncode != 0:
        logger.error("%s failed: %s", command, completed.stderr.strip())
        raise QSMError(
            f"{command} exited with status {completed.returncode}: {completed.stderr.strip()}",
            stage='masking'
        )

    candidates = sorted(glob.glob(out_prefix + '_mask.nii*'))
    if not candidates:
        raise QSMError(f"{command} did not produce a mask for prefix '{out_prefix}'.", stage='masking')
    return candidates[0]

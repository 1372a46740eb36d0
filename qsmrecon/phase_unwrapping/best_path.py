# qsmrecon/phase_unwrapping/best_path.py
"""Path-based 3D phase unwrapping through an external best-path executable."""

import logging
import os
import subprocess
import tempfile
import typing

import numpy as np
import torch

from .base import PhaseUnwrapper, UnwrapResult, recenter_phase
from ..exceptions import UnwrappingError
from ..utils import as_float_mask

logger = logging.getLogger(__name__)

# x varies fastest in the exchange files, which is the layout the best-path
# executable assumes for the (nx, ny, nz) it is given.
EXCHANGE_ORDER = 'F'


def write_float32_volume(volume: np.ndarray, path: str, order: str = EXCHANGE_ORDER) -> None:
    """Writes a 3D volume as raw 32-bit floats."""
    np.asarray(volume, dtype=np.float32).ravel(order=order).tofile(path)


def write_mask_volume(mask: np.ndarray, path: str, order: str = EXCHANGE_ORDER) -> None:
    """Writes a binary mask as raw bytes scaled to 0/255."""
    ((np.asarray(mask) != 0).astype(np.uint8) * 255).ravel(order=order).tofile(path)


def read_float32_volume(path: str, shape: typing.Tuple[int, int, int], order: str = EXCHANGE_ORDER) -> np.ndarray:
    """
    Reads raw 32-bit floats and reshapes them to `shape`.

    Raises:
        ValueError: If the file holds a different number of voxels than `shape`.
    """
    data = np.fromfile(path, dtype=np.float32)
    expected = int(np.prod(shape))
    if data.size != expected:
        raise ValueError(
            f"{os.path.basename(path)} holds {data.size} voxels, expected {expected} for shape {shape}."
        )
    return data.reshape(shape, order=order)


class BestPathUnwrapper(PhaseUnwrapper):
    """
    Unwraps phase with an external best-path (3DSRNCP-compatible) executable.

    Each call works in its own temporary directory, so echoes can be unwrapped
    concurrently without file name collisions. The executable is invoked as::

        <command...> wrapped_phase.dat mask_unwrp.dat unwrapped_phase.dat nx ny nz reliability.dat

    and must write both output files. The unwrapped result is recentred with
    :func:`recenter_phase` and masked; the reliability map is masked.
    """

    name = 'bestpath'
    produces_reliability = True

    def __init__(
        self,
        command: typing.Union[str, typing.Sequence[str]] = ('3DSRNCP',),
        timeout: typing.Optional[float] = None,
        work_dir: typing.Optional[str] = None,
        order: str = EXCHANGE_ORDER
    ):
        """
        Args:
            command (str or Sequence[str]): Executable, optionally preceded by an
                interpreter, e.g. ``('/opt/bin/3DSRNCP',)``.
            timeout (float, optional): Seconds allowed per echo; a timeout is a failure.
            work_dir (str, optional): Parent directory for the per-echo temporary directories.
            order (str): Serialisation order of the exchange files, 'F' or 'C'.
        """
        if isinstance(command, str):
            command = (command,)
        if not command:
            raise ValueError("command must name an executable.")
        if order not in ('F', 'C'):
            raise ValueError(f"order must be 'F' or 'C', got '{order}'.")
        self.command = tuple(str(c) for c in command)
        self.timeout = timeout
        self.work_dir = work_dir
        self.order = order

    def unwrap(
        self,
        wrapped_phase: torch.Tensor,
        mask: torch.Tensor,
        voxel_size: typing.Sequence[float],
        magnitude: typing.Optional[torch.Tensor] = None,
        echo: typing.Optional[int] = None
    ) -> UnwrapResult:
        if not isinstance(wrapped_phase, torch.Tensor):
            raise TypeError("wrapped_phase must be a PyTorch tensor.")
        if wrapped_phase.ndim != 3:
            raise ValueError(f"wrapped_phase must be a 3D tensor, got shape {tuple(wrapped_phase.shape)}")
        if mask.shape != wrapped_phase.shape:
            raise ValueError("Mask dimensions must match the phase volume.")

        device = wrapped_phase.device
        dtype = wrapped_phase.dtype
        shape = tuple(int(n) for n in wrapped_phase.shape)
        nx, ny, nz = shape
        label = f"echo{echo}" if echo is not None else "volume"

        with tempfile.TemporaryDirectory(prefix=f"bestpath_{label}_", dir=self.work_dir) as tmp_dir:
            wrapped_path = os.path.join(tmp_dir, 'wrapped_phase.dat')
            mask_path = os.path.join(tmp_dir, 'mask_unwrp.dat')
            unwrapped_path = os.path.join(tmp_dir, 'unwrapped_phase.dat')
            reliability_path = os.path.join(tmp_dir, 'reliability.dat')

            write_float32_volume(wrapped_phase.detach().cpu().numpy(), wrapped_path, self.order)
            write_mask_volume(mask.detach().cpu().numpy(), mask_path, self.order)

            cmd = list(self.command) + [
                wrapped_path, mask_path, unwrapped_path,
                str(nx), str(ny), str(nz), reliability_path
            ]
            logger.debug("Running %s", ' '.join(cmd))
            try:
                proc = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise UnwrappingError(
                    f"Best-path executable not found: {self.command[0]}", echo=echo
                ) from exc
            except subprocess.TimeoutExpired as exc:
                raise UnwrappingError(
                    f"Best-path unwrapping timed out after {self.timeout} s.", echo=echo
                ) from exc

            if proc.stdout:
                logger.debug("%s stdout: %s", label, proc.stdout.strip())
            if proc.returncode != 0:
                logger.error("%s stderr: %s", label, (proc.stderr or '').strip())
                raise UnwrappingError(
                    f"Best-path executable exited with status {proc.returncode}: "
                    f"{(proc.stderr or '').strip()}",
                    echo=echo
                )

            for path in (unwrapped_path, reliability_path):
                if not os.path.exists(path):
                    raise UnwrappingError(
                        f"Best-path executable did not write {os.path.basename(path)}.", echo=echo
                    )
            try:
                unwrapped_np = read_float32_volume(unwrapped_path, shape, self.order)
                reliability_np = read_float32_volume(reliability_path, shape, self.order)
            except ValueError as exc:
                raise UnwrappingError(f"Shape mismatch on readback: {exc}", echo=echo) from exc

        unwrapped = torch.from_numpy(unwrapped_np).to(device=device, dtype=dtype)
        reliability = torch.from_numpy(reliability_np).to(device=device, dtype=dtype)

        unwrapped = recenter_phase(unwrapped, mask, echo=echo)
        reliability = reliability * as_float_mask(mask, dtype).to(device)
        return UnwrapResult(unwrapped, reliability)

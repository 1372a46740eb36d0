# qsmrecon/phase_unwrapping/region_growing.py
"""3D magnitude-guided region-growing phase unwrapping (PRELUDE-style)."""

import heapq
import typing

import numpy as np
import torch

from .base import PhaseUnwrapper, UnwrapResult
from ..utils import as_float_mask, wrap_phase

_NEIGHBOR_OFFSETS = ((-1, 0, 0), (1, 0, 0), (0, -1, 0), (0, 1, 0), (0, 0, -1), (0, 0, 1))


def _get_gradient_magnitude_3d(
    wrapped_phase: torch.Tensor,
    voxel_size: typing.Sequence[float]
) -> torch.Tensor:
    """
    Computes the magnitude of the wrapped phase gradient using torch.diff.
    Prepends to keep the original dimensions.
    """
    grads = []
    for dim in range(3):
        first = wrapped_phase.narrow(dim, 0, 1)
        diff = wrap_phase(torch.diff(wrapped_phase, dim=dim, prepend=first))
        grads.append(diff / voxel_size[dim])
    return torch.sqrt(grads[0]**2 + grads[1]**2 + grads[2]**2)


def _grow_regions(
    wrapped: np.ndarray,
    inside: np.ndarray,
    quality: np.ndarray
) -> np.ndarray:
    """
    Quality-guided flood fill over every connected component of `inside`.

    Each component is seeded at its highest-quality voxel, which keeps its
    wrapped value. Voxels are then unwrapped in order of decreasing quality
    relative to the neighbour they were reached from.
    """
    dims = wrapped.shape
    unwrapped = np.zeros_like(wrapped)
    visited = ~inside

    # Candidate seeds in order of decreasing quality.
    candidates = np.flatnonzero(inside.ravel())
    candidates = candidates[np.argsort(-quality.ravel()[candidates], kind='stable')]

    for flat_seed in candidates:
        seed = np.unravel_index(flat_seed, dims)
        if visited[seed]:
            continue
        visited[seed] = True
        unwrapped[seed] = wrapped[seed]
        heap = [(-quality[seed], seed)]

        while heap:
            _, (x, y, z) = heapq.heappop(heap)
            current_unwrapped = unwrapped[x, y, z]
            current_wrapped = wrapped[x, y, z]

            for dx, dy, dz in _NEIGHBOR_OFFSETS:
                nx, ny, nz = x + dx, y + dy, z + dz
                if not (0 <= nx < dims[0] and 0 <= ny < dims[1] and 0 <= nz < dims[2]):
                    continue
                if visited[nx, ny, nz]:
                    continue
                visited[nx, ny, nz] = True

                diff = wrapped[nx, ny, nz] - current_wrapped
                diff = (diff + np.pi) % (2 * np.pi) - np.pi
                unwrapped[nx, ny, nz] = current_unwrapped + diff
                heapq.heappush(heap, (-quality[nx, ny, nz], (nx, ny, nz)))

    return unwrapped


class RegionGrowingUnwrapper(PhaseUnwrapper):
    """
    Magnitude-guided region-growing unwrapper.

    Voxels with high magnitude are unwrapped first, so noisy low-signal
    regions are reached last and cannot propagate errors into the rest of the
    volume. When no magnitude is supplied, the quality map is the negated
    wrapped phase-gradient magnitude (smoother phase is unwrapped first).

    This strategy does not produce a reliability map.
    """

    name = 'prelude'
    produces_reliability = False

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
        if magnitude is not None and magnitude.shape != wrapped_phase.shape:
            raise ValueError("Magnitude dimensions must match the phase volume.")

        device = wrapped_phase.device
        dtype = wrapped_phase.dtype

        if magnitude is not None:
            quality = magnitude.detach().to(torch.float64)
        else:
            quality = -_get_gradient_magnitude_3d(wrapped_phase.detach().to(torch.float64), voxel_size)

        unwrapped_np = _grow_regions(
            wrapped_phase.detach().cpu().numpy().astype(np.float64),
            (mask != 0).cpu().numpy(),
            quality.cpu().numpy()
        )
        unwrapped = torch.from_numpy(unwrapped_np).to(device=device, dtype=dtype)
        return UnwrapResult(unwrapped * as_float_mask(mask, dtype).to(device), None)

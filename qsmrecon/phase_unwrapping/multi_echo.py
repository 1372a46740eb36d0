# qsmrecon/phase_unwrapping/multi_echo.py
"""Per-echo dispatch of a spatial unwrapping strategy over a multi-echo stack."""

import concurrent.futures
import logging
import typing

import torch

from .base import PhaseUnwrapper, UnwrapResult
from .best_path import BestPathUnwrapper
from .region_growing import RegionGrowingUnwrapper
from ..config import UNWRAP_METHODS
from ..exceptions import ConfigurationError, UnwrappingError

logger = logging.getLogger(__name__)

UNWRAPPERS = {
    'prelude': RegionGrowingUnwrapper,
    'bestpath': BestPathUnwrapper,
}


def get_unwrapper(name: str, options=None, **kwargs) -> PhaseUnwrapper:
    """
    Builds the unwrapping strategy registered under `name`.

    Args:
        name (str): 'prelude' / 'guided_region' or 'bestpath' / 'path_based'.
        options (QSMOptions, optional): Source of strategy parameters; explicit
            keyword arguments take precedence.
        **kwargs: Passed to the strategy's constructor.

    Raises:
        ConfigurationError: If `name` is not a recognised method.
    """
    canonical = UNWRAP_METHODS.get(str(name).lower())
    if canonical is None:
        raise ConfigurationError(
            f"Unrecognised unwrapping method '{name}'; expected 'prelude' or 'bestpath'."
        )
    if options is not None and canonical == 'bestpath':
        kwargs.setdefault('command', options.bestpath_command)
        kwargs.setdefault('timeout', options.unwrap_timeout)
    return UNWRAPPERS[canonical](**kwargs)


def unwrap_echoes(
    unwrapper: PhaseUnwrapper,
    wrapped_phase: torch.Tensor,
    mask: torch.Tensor,
    voxel_size: typing.Sequence[float],
    magnitude: typing.Optional[torch.Tensor] = None,
    max_workers: typing.Optional[int] = None
) -> UnwrapResult:
    """
    Unwraps every echo of a multi-echo phase stack independently.

    Echoes are submitted to a thread pool and all of them must finish before
    this function returns. The mask and voxel size are shared read-only; each
    echo receives its own copy of its phase volume. If any echo fails, no
    partial result is returned.

    Args:
        unwrapper (PhaseUnwrapper): Strategy applied to each echo.
        wrapped_phase (torch.Tensor): Wrapped phase, shape (num_echoes, X, Y, Z).
        mask (torch.Tensor): Binary mask, shape (X, Y, Z).
        voxel_size (Sequence[float]): Voxel spacing in mm.
        magnitude (torch.Tensor, optional): Magnitude stack with the same shape as `wrapped_phase`.
        max_workers (int, optional): Maximum concurrent echoes. Defaults to one worker per echo.

    Returns:
        UnwrapResult: Unwrapped phase of shape (num_echoes, X, Y, Z) and, when the
        strategy produces one, a reliability stack of the same shape (else None).

    Raises:
        UnwrappingError: If any echo fails or returns a volume of the wrong shape.
    """
    if not isinstance(unwrapper, PhaseUnwrapper):
        raise TypeError("unwrapper must be a PhaseUnwrapper instance.")
    if not isinstance(wrapped_phase, torch.Tensor):
        raise TypeError("wrapped_phase must be a PyTorch tensor.")
    if wrapped_phase.ndim != 4:
        raise ValueError("wrapped_phase must have shape (num_echoes, X, Y, Z).")
    spatial_shape = wrapped_phase.shape[1:]
    if mask.shape != spatial_shape:
        raise ValueError("Mask dimensions must match spatial dimensions of phase images.")
    if magnitude is not None and magnitude.shape != wrapped_phase.shape:
        raise ValueError("magnitude and wrapped_phase must have the same shape.")

    num_echoes = wrapped_phase.shape[0]

    def _unwrap_one(e: int) -> UnwrapResult:
        echo_magnitude = magnitude[e].clone() if magnitude is not None else None
        return unwrapper.unwrap(
            wrapped_phase[e].clone(), mask, voxel_size, magnitude=echo_magnitude, echo=e + 1
        )

    results: typing.List[typing.Optional[UnwrapResult]] = [None] * num_echoes
    errors: typing.List[UnwrappingError] = []
    workers = max_workers or num_echoes
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(_unwrap_one, e): e for e in range(num_echoes)}
        for future in concurrent.futures.as_completed(futures):
            e = futures[future]
            try:
                results[e] = future.result()
            except UnwrappingError as exc:
                errors.append(exc)
            except Exception as exc:
                error = UnwrappingError(
                    f"{unwrapper.name} failed: {type(exc).__name__}: {exc}", echo=e + 1
                )
                error.__cause__ = exc
                errors.append(error)

    if errors:
        errors.sort(key=lambda err: err.echo or 0)
        for err in errors:
            logger.error("%s", err)
        raise errors[0]

    for e, result in enumerate(results):
        if tuple(result.unwrapped_phase.shape) != tuple(spatial_shape):
            raise UnwrappingError(
                f"Unwrapped volume has shape {tuple(result.unwrapped_phase.shape)}, "
                f"expected {tuple(spatial_shape)}.",
                echo=e + 1
            )

    unwrapped = torch.stack([r.unwrapped_phase for r in results], dim=0)
    reliability = None
    if all(r.reliability is not None for r in results):
        reliability = torch.stack([r.reliability for r in results], dim=0)
    return UnwrapResult(unwrapped, reliability)

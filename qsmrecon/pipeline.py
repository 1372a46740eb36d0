# qsmrecon/pipeline.py
"""Orchestration of the multi-echo QSM reconstruction: phase to field map to susceptibility."""

import concurrent.futures
import logging
import typing

import numpy as np
import torch

from .background_removal import BackgroundRemover, get_background_remover
from .config import QSMOptions
from .dipole_inversion import DipoleInverter, TVDipoleInverter
from .exceptions import BackendError, ConfigurationError
from .field_mapping import (
    correct_inter_echo_jumps,
    field_to_ppm,
    fit_phase_to_echo_times,
    reliability_mask,
)
from .phase_unwrapping import PhaseUnwrapper, get_unwrapper, unwrap_echoes
from .utils import as_float_mask, validate_voxel_size

logger = logging.getLogger(__name__)

# Labels used in operator-facing log output and output directory names.
BACKEND_LABELS = {
    'pdf': 'PDF',
    'sharp': 'SHARP',
    'resharp': 'RESHARP',
    'esharp': 'E-SHARP',
    'lbv': 'LBV',
}


class AcquisitionData:
    """
    Multi-echo gradient echo acquisition in echo-first layout.
    """
    def __init__(self,
                 magnitude: torch.Tensor,
                 phase: torch.Tensor,
                 echo_times: typing.Sequence[float],
                 voxel_size: typing.Sequence[float],
                 orientation: typing.Sequence[float] = (0.0, 0.0, 1.0),
                 field_strength: float = 3.0):
        """
        Initializes an AcquisitionData object.

        Args:
            magnitude: Magnitude images, shape (num_echoes, X, Y, Z).
            phase: Wrapped phase in radians, same shape as `magnitude`.
            echo_times: Echo times in seconds, one per echo.
            voxel_size: Voxel spacing in mm.
            orientation: Main field direction projected onto the image axes.
            field_strength: Main field strength in tesla.
        """
        if not isinstance(magnitude, torch.Tensor) or not isinstance(phase, torch.Tensor):
            raise TypeError("magnitude and phase must be PyTorch tensors.")
        if phase.ndim != 4:
            raise ValueError(f"phase must have shape (num_echoes, X, Y, Z), got {tuple(phase.shape)}.")
        if magnitude.shape != phase.shape:
            raise ValueError("magnitude and phase must have the same shape.")
        echo_times = torch.as_tensor(echo_times, dtype=torch.float64).flatten()
        if echo_times.shape[0] != phase.shape[0]:
            raise ValueError(
                f"Got {echo_times.shape[0]} echo times for {phase.shape[0]} echoes."
            )
        if phase.shape[0] < 2:
            raise ValueError("At least two echoes are required.")
        if field_strength <= 0:
            raise ValueError(f"field_strength must be positive, got {field_strength}.")

        self.magnitude = magnitude
        self.phase = phase
        self.echo_times = echo_times
        self.voxel_size = validate_voxel_size(voxel_size)
        self.orientation = tuple(float(v) for v in orientation)
        self.field_strength = float(field_strength)

    @property
    def num_echoes(self) -> int:
        return self.phase.shape[0]

    @property
    def spatial_shape(self) -> typing.Tuple[int, int, int]:
        return tuple(self.phase.shape[1:])

    @classmethod
    def from_xyz_echo(cls, magnitude, phase, echo_times, voxel_size,
                      orientation=(0.0, 0.0, 1.0), field_strength=3.0,
                      dtype=torch.float64) -> 'AcquisitionData':
        """
        Builds an acquisition from (X, Y, Z, E) arrays, as read from DICOM or NIfTI.
        """
        magnitude = torch.as_tensor(np.asarray(magnitude), dtype=dtype)
        phase = torch.as_tensor(np.asarray(phase), dtype=dtype)
        if phase.ndim != 4:
            raise ValueError(f"phase must have shape (X, Y, Z, num_echoes), got {tuple(phase.shape)}.")
        return cls(
            magnitude.permute(3, 0, 1, 2).contiguous(),
            phase.permute(3, 0, 1, 2).contiguous(),
            echo_times, voxel_size, orientation, field_strength
        )


class BackendOutput(typing.NamedTuple):
    """Local field, refined mask and susceptibility produced by one background removal backend."""
    local_field: torch.Tensor
    mask: torch.Tensor
    susceptibility: torch.Tensor


class QSMResult:
    """
    Everything a QSM run produces.

    Attributes:
        unwrapped_phase: Jump-corrected unwrapped phase, shape (num_echoes, X, Y, Z).
        reliability: Unwrapping reliability stack, or None when the unwrapper has none.
        njumps: 2*pi jump count per 1-based echo number (3..E).
        field_ppm: Total field map in ppm, shape (X, Y, Z).
        residual: Raw echo-fit residual.
        smoothed_residual: Box-smoothed residual, or None when reliability masking is off.
        reliability_mask: Gate R in {0, 1}.
        backends: Successful backends by name.
        failures: Failed backends by name.
    """
    def __init__(self, unwrapped_phase, reliability, njumps, field_ppm, residual,
                 smoothed_residual, reliability_mask):
        self.unwrapped_phase = unwrapped_phase
        self.reliability = reliability
        self.njumps = njumps
        self.field_ppm = field_ppm
        self.residual = residual
        self.smoothed_residual = smoothed_residual
        self.reliability_mask = reliability_mask
        self.backends: typing.Dict[str, BackendOutput] = {}
        self.failures: typing.Dict[str, BackendError] = {}


class QSMPipeline:
    """
    Multi-echo QSM reconstruction.

    Stages run in order: per-echo spatial unwrapping, inter-echo 2*pi jump
    correction, magnitude-weighted echo fit, residual-based reliability
    gating, then each configured background removal backend followed by
    dipole inversion. Backends run only after the field map is complete and
    each one receives its own copies of the field map and mask, so a failing
    backend is recorded in `QSMResult.failures` without affecting the others.
    """

    def __init__(self,
                 options: typing.Optional[typing.Union[QSMOptions, typing.Mapping[str, typing.Any]]] = None,
                 unwrapper: typing.Optional[PhaseUnwrapper] = None,
                 remover_factory: typing.Optional[typing.Callable[[str, QSMOptions], BackgroundRemover]] = None,
                 inverter: typing.Optional[DipoleInverter] = None):
        if options is None:
            options = QSMOptions()
        elif not isinstance(options, QSMOptions):
            options = QSMOptions.from_dict(options)
        else:
            options.validate()
        self.options = options

        if unwrapper is None:
            unwrapper = get_unwrapper(options.ph_unwrap, options)
        elif not isinstance(unwrapper, PhaseUnwrapper):
            raise ConfigurationError("unwrapper must be a PhaseUnwrapper instance.")
        self.unwrapper = unwrapper

        self.remover_factory = remover_factory or get_background_remover
        # Bad backend parameters fail here, before any volume is touched.
        self.removers = {name: self.remover_factory(name, options) for name in options.bkg_rm}
        self.inverter = inverter or TVDipoleInverter(tv_reg=options.tv_reg, max_iterations=options.inv_num)

    def estimate_field_map(self, acquisition: AcquisitionData, mask: torch.Tensor) -> QSMResult:
        """
        Runs unwrapping, jump correction, echo fit and reliability gating.

        Raises:
            UnwrappingError: If any echo fails to unwrap.
            EmptyMaskError: If `mask` selects no voxel.
        """
        options = self.options
        if mask.shape != acquisition.spatial_shape:
            raise ValueError("Mask dimensions must match spatial dimensions of the acquisition.")
        dtype = acquisition.phase.dtype
        mask_f = as_float_mask(mask, dtype)

        logger.info("--> unwrap aliasing phase using %s...", self.unwrapper.name)
        unwrapped, reliability = unwrap_echoes(
            self.unwrapper, acquisition.phase, mask_f, acquisition.voxel_size,
            magnitude=acquisition.magnitude, max_workers=options.unwrap_workers
        )

        logger.info("--> correct for potential 2pi jumps between TEs ...")
        unwrapped, njumps = correct_inter_echo_jumps(unwrapped, mask_f, readout=options.readout, inplace=True)

        logger.info("--> magnitude weighted LS fit of phase to TE ...")
        field, residual = fit_phase_to_echo_times(unwrapped, acquisition.magnitude, acquisition.echo_times)
        gate, smoothed = reliability_mask(residual, acquisition.voxel_size, options.fit_thr, enabled=options.r_mask)
        field_ppm = field_to_ppm(field, acquisition.field_strength) * mask_f

        return QSMResult(unwrapped, reliability, njumps, field_ppm, residual, smoothed, gate)

    def _run_backend(self, name: str, field_ppm: torch.Tensor, mask: torch.Tensor,
                     acquisition: AcquisitionData, magnitude: torch.Tensor) -> BackendOutput:
        label = BACKEND_LABELS.get(name, name.upper())
        logger.info("--> %s to remove background field ...", label)
        local_field, refined_mask = self.removers[name](
            field_ppm, mask, acquisition.voxel_size,
            magnitude=magnitude, orientation=acquisition.orientation
        )
        logger.info("--> TV susceptibility inversion on %s...", label)
        susceptibility = self.inverter(
            local_field, refined_mask, acquisition.voxel_size,
            magnitude=magnitude, orientation=acquisition.orientation
        )
        return BackendOutput(local_field, refined_mask, susceptibility * refined_mask)

    def run(self, acquisition: AcquisitionData, mask: torch.Tensor) -> QSMResult:
        """
        Runs the full reconstruction.

        Args:
            acquisition (AcquisitionData): Multi-echo magnitude and phase.
            mask (torch.Tensor): Tissue mask, shape (X, Y, Z).

        Returns:
            QSMResult: Field map stages plus one `BackendOutput` per successful backend.
        """
        if not isinstance(acquisition, AcquisitionData):
            raise TypeError("acquisition must be an AcquisitionData instance.")
        if not isinstance(mask, torch.Tensor):
            raise TypeError("mask must be a PyTorch tensor.")

        result = self.estimate_field_map(acquisition, mask)
        combined_mask = as_float_mask(mask, result.field_ppm.dtype) * result.reliability_mask
        magnitude = acquisition.magnitude[-1]

        def _guarded(name: str) -> BackendOutput:
            try:
                return self._run_backend(
                    name, result.field_ppm.clone(), combined_mask.clone(), acquisition, magnitude.clone()
                )
            except BackendError:
                raise
            except Exception as exc:
                raise BackendError(f"{type(exc).__name__}: {exc}", backend=name) from exc

        names = list(self.options.bkg_rm)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.options.backend_workers) as executor:
            futures = {name: executor.submit(_guarded, name) for name in names}
            for name in names:
                try:
                    result.backends[name] = futures[name].result()
                except BackendError as exc:
                    if exc.backend is None:
                        exc.backend = name
                    logger.error("%s", exc)
                    result.failures[name] = exc

        if not result.backends:
            logger.warning("No background removal backend succeeded.")
        return result


def run_qsm(acquisition: AcquisitionData, mask: torch.Tensor,
            options: typing.Optional[typing.Mapping[str, typing.Any]] = None) -> QSMResult:
    """Convenience wrapper: ``QSMPipeline(options).run(acquisition, mask)``."""
    return QSMPipeline(options).run(acquisition, mask)

# qsmrecon/field_mapping/__init__.py
"""Multi-echo phase to field map: jump correction, weighted echo fit and reliability gating."""

from .jump_correction import correct_inter_echo_jumps
from .echo_fit import GYROMAGNETIC_RATIO, fit_phase_to_echo_times, field_to_ppm, ppm_to_field
from .reliability import box_smooth_3d, reliability_mask, residual_kernel_size


__all__ = [
    "correct_inter_echo_jumps",
    "GYROMAGNETIC_RATIO",
    "fit_phase_to_echo_times",
    "field_to_ppm",
    "ppm_to_field",
    "box_smooth_3d",
    "reliability_mask",
    "residual_kernel_size",
]

# qsmrecon/__init__.py
"""
qsmrecon: multi-echo gradient echo quantitative susceptibility mapping.

The reconstruction runs per-echo phase unwrapping, inter-echo 2*pi jump
correction, a magnitude-weighted fit of phase to echo time, residual-based
reliability masking, background field removal and total variation dipole
inversion.
"""

__version__ = "0.1.0"

from .config import QSMOptions
from .exceptions import (
    QSMError,
    ConfigurationError,
    UnwrappingError,
    EmptyMaskError,
    BackendError,
)
from .pipeline import AcquisitionData, BackendOutput, QSMPipeline, QSMResult, run_qsm


__all__ = [
    "__version__",
    "QSMOptions",
    "QSMError",
    "ConfigurationError",
    "UnwrappingError",
    "EmptyMaskError",
    "BackendError",
    "AcquisitionData",
    "BackendOutput",
    "QSMPipeline",
    "QSMResult",
    "run_qsm",
]

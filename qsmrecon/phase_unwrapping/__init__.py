# qsmrecon/phase_unwrapping/__init__.py
"""
Per-echo spatial phase unwrapping.

Two interchangeable strategies implement the `PhaseUnwrapper` interface:
- `RegionGrowingUnwrapper` ('prelude'): in-process, magnitude-guided region growing.
  Produces no reliability map.
- `BestPathUnwrapper` ('bestpath'): runs an external best-path executable per echo
  and returns the unwrapped phase together with its reliability map.

`unwrap_echoes` dispatches a strategy over all echoes of a stack concurrently.
"""

from .base import PhaseUnwrapper, UnwrapResult, recenter_phase
from .region_growing import RegionGrowingUnwrapper
from .best_path import BestPathUnwrapper
from .multi_echo import get_unwrapper, unwrap_echoes


__all__ = [
    "PhaseUnwrapper",
    "UnwrapResult",
    "recenter_phase",
    "RegionGrowingUnwrapper",
    "BestPathUnwrapper",
    "get_unwrapper",
    "unwrap_echoes",
]

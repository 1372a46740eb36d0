# qsmrecon/dipole_inversion/__init__.py
"""Dipole inversion: local field to susceptibility."""

from .base import DipoleInverter
from .tv import TVDipoleInverter, smoothed_total_variation


__all__ = [
    "DipoleInverter",
    "TVDipoleInverter",
    "smoothed_total_variation",
]

# qsmrecon/background_removal/__init__.py
"""
Background field removal backends.

Each backend separates the local (tissue) field from the background field
produced by sources outside the mask and returns a `BackgroundResult`.
"""

import typing

from .base import BackgroundRemover, BackgroundResult
from .esharp import ESHARPRemover
from .lbv import LBVRemover, solve_harmonic
from .pdf import PDFRemover
from .sharp import RESHARPRemover, SHARPRemover
from ..exceptions import ConfigurationError

BACKGROUND_REMOVERS = {
    'pdf': PDFRemover,
    'sharp': SHARPRemover,
    'resharp': RESHARPRemover,
    'esharp': ESHARPRemover,
    'lbv': LBVRemover,
}


def get_background_remover(name: str, options=None) -> BackgroundRemover:
    """
    Builds the background removal backend `name` from pipeline options.

    Args:
        name (str): One of 'pdf', 'sharp', 'resharp', 'esharp', 'lbv'.
        options (QSMOptions, optional): Source of backend parameters; defaults are used when None.

    Returns:
        BackgroundRemover: Configured backend instance.
    """
    key = str(name).lower()
    if key not in BACKGROUND_REMOVERS:
        raise ConfigurationError(
            f"Unrecognised background field removal method '{name}'; "
            f"expected one of {tuple(BACKGROUND_REMOVERS)}.",
            backend=key
        )
    if options is None:
        return BACKGROUND_REMOVERS[key]()

    if key == 'pdf':
        return PDFRemover(tol=options.pdf_tol, max_iter=options.pdf_num)
    if key == 'sharp':
        return SHARPRemover(smv_radius=options.smv_rad, t_svd=options.t_svd)
    if key == 'resharp':
        return RESHARPRemover(smv_radius=options.smv_rad, tik_reg=options.tik_reg, max_iter=options.cgs_num)
    if key == 'esharp':
        return ESHARPRemover(
            smv_radius=options.smv_rad, tik_reg=options.tik_reg,
            max_iter=options.cgs_num, radius=options.esharp_radius
        )
    return LBVRemover(tol=options.lbv_tol, peel=options.lbv_peel)


__all__ = [
    'BackgroundRemover',
    'BackgroundResult',
    'PDFRemover',
    'SHARPRemover',
    'RESHARPRemover',
    'ESHARPRemover',
    'LBVRemover',
    'solve_harmonic',
    'BACKGROUND_REMOVERS',
    'get_background_remover',
]

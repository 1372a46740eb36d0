# qsmrecon/cli.py
"""Command line entry point: multi-echo SPGR DICOM directory to QSM NIfTI volumes."""

import argparse
import logging
import os
import sys

import numpy as np
import torch

from . import io as qsm_io
from .config import BACKGROUND_METHODS, QSMOptions
from .exceptions import QSMError
from .masking import bet_mask, create_mask_from_magnitude
from .pipeline import BACKEND_LABELS, AcquisitionData, QSMPipeline

logger = logging.getLogger(__name__)

OUTPUT_DIR_NAME = 'QSM_SPGR'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='qsm-spgr',
        description="Quantitative susceptibility mapping from a multi-echo SPGR DICOM directory."
    )
    parser.add_argument('dicom_dir', type=str, help="Directory of magnitude and phase DICOM files")
    parser.add_argument('out_dir', type=str, nargs='?', default=os.getcwd(),
                        help="Directory in which QSM_SPGR/ is created (default: current directory)")
    parser.add_argument('--readout', choices=('unipolar', 'bipolar'), default='unipolar')
    parser.add_argument('--ph-unwrap', default='bestpath', help="'prelude' or 'bestpath'")
    parser.add_argument('--bkg-rm', nargs='+', default=['resharp'], choices=BACKGROUND_METHODS,
                        help="One or more background field removal methods")
    parser.add_argument('--fit-thr', type=float, default=20.0, help="Threshold on the smoothed fit residual")
    parser.add_argument('--no-r-mask', action='store_true', help="Disable residual-based reliability masking")
    parser.add_argument('--smv-rad', type=float, default=3.0, help="SMV kernel radius in mm")
    parser.add_argument('--tik-reg', type=float, default=1e-4, help="RESHARP Tikhonov weight")
    parser.add_argument('--t-svd', type=float, default=0.1, help="SHARP truncation threshold")
    parser.add_argument('--cgs-num', type=int, default=200, help="RESHARP/E-SHARP CG iterations")
    parser.add_argument('--lbv-tol', type=float, default=0.01, help="LBV convergence tolerance")
    parser.add_argument('--lbv-peel', type=int, default=2, help="LBV boundary layers peeled")
    parser.add_argument('--pdf-tol', type=float, default=0.1, help="PDF CG tolerance")
    parser.add_argument('--pdf-num', type=int, default=30, help="PDF CG iterations")
    parser.add_argument('--esharp-radius', type=int, nargs=3, default=[10, 10, 5], metavar=('RX', 'RY', 'RZ'),
                        help="E-SHARP extension radius in voxels")
    parser.add_argument('--tv-reg', type=float, default=5e-4, help="TV regularisation weight")
    parser.add_argument('--inv-num', type=int, default=500, help="TV inversion iterations")
    parser.add_argument('--mask', choices=('threshold', 'bet'), default='bet',
                        help="Mask from FSL bet2 on the first echo magnitude, or a magnitude threshold")
    parser.add_argument('--mask-threshold', type=float, default=0.1,
                        help="Fraction of the maximum magnitude used with --mask threshold")
    parser.add_argument('--bet-thr', type=float, default=0.4)
    parser.add_argument('--bet-smooth', type=float, default=2.0)
    parser.add_argument('--bestpath-command', default='3DSRNCP', help="Best-path unwrapping executable")
    parser.add_argument('--unwrap-timeout', type=float, default=None,
                        help="Seconds allowed per echo for best-path unwrapping")
    parser.add_argument('--unwrap-workers', type=int, default=None, help="Concurrent echoes (default: one per echo)")
    parser.add_argument('--backend-workers', type=int, default=1)
    parser.add_argument('--verbose', '-v', action='store_true', help="Enable debug logging")
    return parser


def options_from_args(args: argparse.Namespace) -> QSMOptions:
    return QSMOptions(
        readout=args.readout,
        r_mask=not args.no_r_mask,
        fit_thr=args.fit_thr,
        bet_thr=args.bet_thr,
        bet_smooth=args.bet_smooth,
        ph_unwrap=args.ph_unwrap,
        bkg_rm=tuple(args.bkg_rm),
        smv_rad=args.smv_rad,
        tik_reg=args.tik_reg,
        t_svd=args.t_svd,
        cgs_num=args.cgs_num,
        lbv_tol=args.lbv_tol,
        lbv_peel=args.lbv_peel,
        pdf_tol=args.pdf_tol,
        pdf_num=args.pdf_num,
        esharp_radius=tuple(args.esharp_radius),
        tv_reg=args.tv_reg,
        inv_num=args.inv_num,
        backend_workers=args.backend_workers,
        unwrap_workers=args.unwrap_workers,
        unwrap_timeout=args.unwrap_timeout,
        bestpath_command=(args.bestpath_command,),
    )


def write_outputs(result, acquisition: AcquisitionData, options: QSMOptions, path_qsm: str) -> None:
    """Writes the pipeline products under `path_qsm` in (X, Y, Z[, E]) order."""
    vox = acquisition.voxel_size

    def _xyz_echo(stack: torch.Tensor) -> np.ndarray:
        return stack.permute(1, 2, 3, 0).cpu().numpy()

    qsm_io.save_nifti(_xyz_echo(result.unwrapped_phase), vox, os.path.join(path_qsm, 'unph_corrected.nii'))
    if result.reliability is not None:
        qsm_io.save_nifti(_xyz_echo(result.reliability), vox, os.path.join(path_qsm, 'reliability.nii'))
    if result.smoothed_residual is not None:
        qsm_io.save_nifti(result.smoothed_residual, vox, os.path.join(path_qsm, 'fit_residual_blur.nii'))
    qsm_io.save_nifti(result.field_ppm, vox, os.path.join(path_qsm, 'tfs.nii'))

    for name, output in result.backends.items():
        backend_dir = os.path.join(path_qsm, BACKEND_LABELS[name])
        qsm_io.save_nifti(output.local_field, vox, os.path.join(backend_dir, f'lfs_{name}.nii'))
        qsm_io.save_nifti(
            output.susceptibility, vox,
            os.path.join(backend_dir, f'sus_{name}_tv_{options.tv_reg:g}_num_{options.inv_num}.nii')
        )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        options = options_from_args(args)
        pipeline = QSMPipeline(options)

        series = qsm_io.load_philips_dicom_directory(args.dicom_dir)
        acquisition = AcquisitionData.from_xyz_echo(
            series.magnitude, series.phase, series.echo_times, series.voxel_size,
            orientation=series.orientation, field_strength=series.field_strength
        )
        path_qsm = os.path.join(args.out_dir, OUTPUT_DIR_NAME)
        src_dir = os.path.join(path_qsm, 'src')
        for e in range(acquisition.num_echoes):
            qsm_io.save_nifti(series.magnitude[..., e], series.voxel_size, os.path.join(src_dir, f'mag{e + 1}.nii'))
            qsm_io.save_nifti(series.phase[..., e], series.voxel_size, os.path.join(src_dir, f'ph{e + 1}.nii'))

        if args.mask == 'bet':
            mask_path = bet_mask(
                os.path.join(src_dir, 'mag1.nii'), os.path.join(path_qsm, 'BET'),
                bet_thr=options.bet_thr, bet_smooth=options.bet_smooth
            )
            mask_data, _ = qsm_io.load_nifti(mask_path)
            mask = torch.from_numpy(mask_data != 0)
        else:
            mask = create_mask_from_magnitude(acquisition.magnitude[0], args.mask_threshold)

        result = pipeline.run(acquisition, mask)
        write_outputs(result, acquisition, options, path_qsm)
    except QSMError as exc:
        logger.error("QSM reconstruction failed: %s", exc)
        return 1

    for name, exc in result.failures.items():
        logger.warning("Backend %s produced no output: %s", name, exc)
    logger.info("Results written to %s", path_qsm)
    return 0


if __name__ == '__main__':
    sys.exit(main())

# qsmrecon/io.py
"""Module for reading multi-echo DICOM series and reading/writing NIfTI volumes."""

import logging
import os
import typing

import nibabel as nib
import numpy as np
import pydicom
import torch

logger = logging.getLogger(__name__)

# Philips stores phase as unsigned integers in [0, 4094].
PHILIPS_PHASE_RANGE = 4094.0


class DicomSeries(typing.NamedTuple):
    """
    Multi-echo gradient echo acquisition read from a DICOM directory.

    Attributes:
        magnitude (np.ndarray): Magnitude, shape (X, Y, Z, E).
        phase (np.ndarray): Phase in radians within [-pi, pi], shape (X, Y, Z, E).
        echo_times (np.ndarray): Echo times in seconds, shape (E,).
        voxel_size (tuple): Voxel spacing in mm.
        orientation (tuple): Projection of the main field onto the image axes.
        field_strength (float): Main field strength in tesla.
    """
    magnitude: np.ndarray
    phase: np.ndarray
    echo_times: np.ndarray
    voxel_size: typing.Tuple[float, float, float]
    orientation: typing.Tuple[float, float, float]
    field_strength: float


def _list_dicom_files(path: str) -> typing.List[str]:
    names = sorted(n for n in os.listdir(path) if not n.startswith('.'))
    return [os.path.join(path, n) for n in names if os.path.isfile(os.path.join(path, n))]


def _stack_slices(files: typing.Sequence[str], num_slices: int, num_echoes: int) -> np.ndarray:
    # Files are ordered echo-fastest within each slice location.
    planes = np.stack([pydicom.dcmread(f).pixel_array.astype(np.float32) for f in files], axis=0)
    rows, cols = planes.shape[1:]
    planes = planes.reshape(num_slices, num_echoes, rows, cols)
    return np.ascontiguousarray(planes.transpose(3, 2, 0, 1))


def field_orientation(image_orientation_patient: typing.Sequence[float]) -> typing.Tuple[float, float, float]:
    """
    Projection of the scanner z axis onto the image row, column and slice directions.

    Args:
        image_orientation_patient (Sequence[float]): The six direction cosines of
            the DICOM ImageOrientationPatient attribute.
    """
    iop = np.asarray(image_orientation_patient, dtype=np.float64)
    if iop.shape != (6,):
        raise ValueError("ImageOrientationPatient must contain six values.")
    slice_normal = np.cross(iop[:3], iop[3:])
    return float(iop[2]), float(iop[5]), float(slice_normal[2])


def load_philips_dicom_directory(path: str) -> DicomSeries:
    """
    Reads a Philips multi-echo SPGR DICOM directory.

    The directory holds one file per slice and echo, magnitude images first
    and phase images second, sorted by file name. Phase is rescaled from
    [0, 4094] to [-pi, pi].

    Args:
        path (str): Directory containing the DICOM files.

    Returns:
        DicomSeries: Volumes in (X, Y, Z, E) order plus acquisition parameters.
    """
    if not os.path.isdir(path):
        raise FileNotFoundError(f"DICOM directory not found: {path}")
    files = _list_dicom_files(path)
    if not files:
        raise ValueError(f"No DICOM files found in {path}")

    first = pydicom.dcmread(files[0], stop_before_pixels=True)
    num_echoes = int(first.EchoTrainLength)
    if num_echoes < 1 or len(files) % (2 * num_echoes) != 0:
        raise ValueError(
            f"{len(files)} files cannot be split into magnitude and phase for {num_echoes} echoes."
        )
    num_slices = len(files) // num_echoes // 2
    half = len(files) // 2
    logger.info("Reading %d slices x %d echoes from %s", num_slices, num_echoes, path)

    magnitude = _stack_slices(files[:half], num_slices, num_echoes)
    phase = _stack_slices(files[half:], num_slices, num_echoes)
    phase = phase / PHILIPS_PHASE_RANGE * 2 * np.pi - np.pi

    last = pydicom.dcmread(files[-1], stop_before_pixels=True)
    spacing = [float(v) for v in first.PixelSpacing]
    if num_slices > 1:
        slice_spacing = abs(float(last.SliceLocation) - float(first.SliceLocation)) / (num_slices - 1)
    else:
        slice_spacing = float(first.SliceThickness)
    voxel_size = (spacing[0], spacing[1], slice_spacing)

    echo_times = np.array(
        [float(pydicom.dcmread(files[e], stop_before_pixels=True).EchoTime) * 1e-3 for e in range(num_echoes)]
    )
    orientation = field_orientation(first.ImageOrientationPatient)
    field_strength = float(first.MagneticFieldStrength)

    return DicomSeries(magnitude, phase.astype(np.float32), echo_times, voxel_size, orientation, field_strength)


def save_nifti(
    volume: typing.Union[torch.Tensor, np.ndarray],
    voxel_size: typing.Sequence[float],
    path: str
) -> str:
    """
    Saves a 3D or 4D volume as NIfTI with a diagonal affine built from `voxel_size`.

    Returns:
        str: The path written.
    """
    if isinstance(volume, torch.Tensor):
        volume = volume.detach().cpu().numpy()
    volume = np.asarray(volume)
    if volume.dtype == np.float64:
        volume = volume.astype(np.float32)
    elif volume.dtype == bool:
        volume = volume.astype(np.uint8)
    affine = np.diag([float(v) for v in voxel_size] + [1.0])
    image = nib.Nifti1Image(volume, affine)
    image.header.set_zooms(tuple(float(v) for v in voxel_size) + (1.0,) * (volume.ndim - 3))
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    nib.save(image, path)
    logger.debug("Saved %s with shape %s", path, volume.shape)
    return path


def load_nifti(path: str) -> typing.Tuple[np.ndarray, typing.Tuple[float, float, float]]:
    """
    Loads a NIfTI volume.

    Returns:
        tuple[np.ndarray, tuple]: The data array and the spatial voxel size.
    """
    image = nib.load(path)
    data = np.asarray(image.get_fdata(dtype=np.float32))
    voxel_size = tuple(float(z) for z in image.header.get_zooms()[:3])
    return data, voxel_size

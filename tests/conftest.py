import os

import numpy as np
import pydicom
import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, MRImageStorage, generate_uid

SERIES_ROWS = 10
SERIES_COLS = 12
SERIES_SLICES = 4
SERIES_ECHO_TIMES_MS = (4.0, 8.0, 12.0)
MARKER_ROW, MARKER_COL = 3, 5


def series_magnitude_value(row, col, s, e):
    if (row, col) == (MARKER_ROW, MARKER_COL):
        return 2000 + 10 * e + s
    if 2 <= row < 8 and 2 <= col < 10:
        return 1000 - 100 * e + s
    return 0


def series_phase_raw(e):
    return 2047 + 100 * (e + 1)


def _write_plane(path, pixels, echo_time, slice_location, num_echoes):
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = MRImageStorage
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = Dataset()
    ds.file_meta = meta
    ds.SOPClassUID = meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.Modality = 'MR'
    ds.Rows, ds.Columns = pixels.shape
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = 'MONOCHROME2'
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.PixelSpacing = [1.0, 1.0]
    ds.SliceThickness = 2.0
    ds.SliceLocation = slice_location
    ds.EchoTime = echo_time
    ds.EchoTrainLength = num_echoes
    ds.MagneticFieldStrength = 3.0
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.PixelData = pixels.astype(np.uint16).tobytes()
    pydicom.dcmwrite(path, ds, enforce_file_format=True)


@pytest.fixture
def spgr_dicom_dir(tmp_path):
    """Philips-style multi-echo series: one file per slice and echo, magnitude files first."""
    directory = tmp_path / 'dicom'
    directory.mkdir()
    num_echoes = len(SERIES_ECHO_TIMES_MS)
    index = 0
    for kind in ('magnitude', 'phase'):
        for s in range(SERIES_SLICES):
            for e, te in enumerate(SERIES_ECHO_TIMES_MS):
                if kind == 'magnitude':
                    pixels = np.array([
                        [series_magnitude_value(r, c, s, e) for c in range(SERIES_COLS)]
                        for r in range(SERIES_ROWS)
                    ])
                else:
                    pixels = np.full((SERIES_ROWS, SERIES_COLS), series_phase_raw(e))
                _write_plane(
                    os.path.join(str(directory), f'IM_{index:04d}'),
                    pixels, te, 2.0 * s, num_echoes
                )
                index += 1
    return str(directory)

"""Shared fixtures: a synthetic two-thigh phantom and its digitizer inputs."""

import json

import numpy as np
import pytest
from pydicom.dataset import FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, MRImageStorage, generate_uid

from thigh_segmenter import Image

BACKGROUND = 0
CORTEX = 20
MUSCLE = 100
FAT = 200

THIGH = 50          # side length of one thigh square
BORDER = 5          # background border around the thighs
GAP = 5             # background columns between the thighs
RIGHT_OFFSET = THIGH + GAP   # right thigh column offset in the cropped image

# Expected pixel counts per thigh
FAT_PIXELS = THIGH * THIGH - 40 * 40            # 900
MUSCLE_PIXELS = 40 * 40 - 10 * 10 - 2 * 2       # 1496
FLEXOR_PIXELS = 20 * 40 - 5 * 10                # 750
EXTENSOR_PIXELS = MUSCLE_PIXELS - FLEXOR_PIXELS  # 746
NONCONTRACTILE_PIXELS = 4


def make_thigh() -> np.ndarray:
    """One thigh: fat ring, muscle, femur cortex with marrow, one bright inclusion."""
    thigh = np.full((THIGH, THIGH), FAT, dtype=np.uint16)
    thigh[5:45, 5:45] = MUSCLE
    thigh[20:30, 20:30] = CORTEX
    thigh[23:27, 23:27] = FAT       # marrow
    thigh[10:12, 10:12] = FAT       # noncontractile inclusion
    return thigh


def make_phantom() -> np.ndarray:
    rows = THIGH + 2 * BORDER
    cols = 2 * THIGH + GAP + 2 * BORDER
    grid = np.full((rows, cols), BACKGROUND, dtype=np.uint16)
    grid[BORDER:BORDER + THIGH, BORDER:BORDER + THIGH] = make_thigh()
    start = BORDER + RIGHT_OFFSET
    grid[BORDER:BORDER + THIGH, start:start + THIGH] = make_thigh()
    return grid


# Flexor polygon around the lower half of the muscle, side-box (x, y)
FLEXOR_POLYGON = [[5, 25], [44, 25], [44, 44], [5, 44]]


def phantom_inputs(approvals=None, polygons=None):
    """Seeds in cropped-image (row, col), polygons in side-box (x, y)."""
    return {
        'seeds': {
            'left': {'fat': [2, 2], 'femur': [20, 20], 'muscle': [15, 30]},
            'right': {'fat': [2, RIGHT_OFFSET + 2],
                      'femur': [20, RIGHT_OFFSET + 20],
                      'muscle': [15, RIGHT_OFFSET + 30]},
        },
        'polygons': polygons or {'left': [FLEXOR_POLYGON], 'right': [FLEXOR_POLYGON]},
        'approvals': approvals or {},
    }


def write_dicom(path, pixels, pixel_spacing=(0.5, 0.5), series_date='20211015'):
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = MRImageStorage
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=meta, preamble=b"\0" * 128)
    ds.SOPClassUID = MRImageStorage
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.PatientID = 'PHANTOM'
    ds.Modality = 'MR'
    if pixels.ndim == 3:
        ds.NumberOfFrames = pixels.shape[0]
    ds.Rows, ds.Columns = pixels.shape[-2:]
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = 'MONOCHROME2'
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    if pixel_spacing is not None:
        ds.PixelSpacing = list(pixel_spacing)
    if series_date:
        ds.SeriesDate = series_date
    ds.PixelData = pixels.astype(np.uint16).tobytes()
    ds.save_as(str(path), enforce_file_format=True)
    return path


@pytest.fixture
def phantom():
    return make_phantom()


@pytest.fixture
def phantom_image(phantom):
    return Image(phantom, pixel_spacing=(0.5, 0.5))


@pytest.fixture
def inputs_file(tmp_path):
    path = tmp_path / 'inputs.json'
    path.write_text(json.dumps(phantom_inputs()))
    return path

"""
Thigh Segmenter - Core Segmentation Routines
============================================
Segmentation and measurement primitives for thigh cross-sectional images
(T1 FFE MRI slices through both thighs).

The routines here are pure transformations over 2-D intensity grids and
boolean masks:

- Background cropping to the bounding box of the imaged anatomy
- Two-level Otsu thresholding into dark / mid / bright bands
- Seeded region growing with a seed-referenced intensity tolerance
- Hole filling (femur marrow, muscle interior)
- Polygon rasterization for the extensor / flexor split
- Mask set algebra that never mutates its inputs

Seed points and the flexor polygon always come from an external actor;
nothing in this module decides where fat, femur or muscle are.

Author: Thigh Muscle CSA Project
License: BSD 3-Clause
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np
from matplotlib.path import Path
from scipy import ndimage
from skimage.filters import threshold_multiotsu
from skimage.measure import regionprops
from skimage.segmentation import flood

logger = logging.getLogger(__name__)


class Side(Enum):
    """Thigh side. Left is always processed first."""
    LEFT = "left"
    RIGHT = "right"


class TissueClass(Enum):
    """Tissue classes that are seeded by the external actor."""
    FAT = "subcutaneous fat"
    FEMUR = "femur"
    MUSCLE = "muscle"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SegmentationError(Exception):
    """Base class for fatal input errors within one analysis run.

    Carries the side and tissue class the failing input belongs to so that
    the caller can re-prompt for the right seed or polygon.
    """

    def __init__(self,
                 message: str,
                 side: Optional[Side] = None,
                 tissue: Optional[TissueClass] = None):
        self.side = side
        self.tissue = tissue
        context = ", ".join(
            part for part in (
                f"side={side.value}" if side is not None else "",
                f"tissue={tissue.value}" if tissue is not None else "",
            ) if part
        )
        super().__init__(f"{message} [{context}]" if context else message)


class EmptyImageError(SegmentationError):
    """No pixel rises above the background level."""


class SeedOutOfBoundsError(SegmentationError):
    """Seed coordinate lies outside the grid."""


class SeedOnExcludedPixelError(SegmentationError):
    """Seed landed on a pixel that a prior masking step zeroed out."""


class DegeneratePolygonError(SegmentationError):
    """Polygon has fewer than three distinct vertices."""


class MissingPixelSpacingError(SegmentationError):
    """Pixel spacing is required (strict unit policy) but not available."""


class PolygonApprovalError(SegmentationError):
    """The extensor/flexor split was not approved within the allowed attempts."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

def _freeze(array: np.ndarray) -> np.ndarray:
    """Return the array flagged read-only."""
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class CropBox:
    """Axis-aligned rectangle in half-open (start, stop) pixel coordinates."""
    row_start: int
    row_stop: int
    col_start: int
    col_stop: int

    @property
    def slices(self) -> Tuple[slice, slice]:
        return (slice(self.row_start, self.row_stop),
                slice(self.col_start, self.col_stop))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.row_stop - self.row_start, self.col_stop - self.col_start)

    def apply(self, array: np.ndarray) -> np.ndarray:
        """Read-only copy of the sub-rectangle of a grid or mask."""
        return _freeze(array[self.slices].copy())


@dataclass(frozen=True)
class Image:
    """Grayscale cross-sectional image.

    Attributes:
        pixels: 2D integer intensity grid (stored as a read-only copy)
        pixel_spacing: Physical spacing between pixels in mm (row, column),
            or None when the source carries no spacing
    """
    pixels: np.ndarray
    pixel_spacing: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        pixels = np.array(self.pixels, copy=True)
        if pixels.ndim != 2:
            raise ValueError(f"Image must be 2D, got shape {pixels.shape}")
        if pixels.size == 0:
            raise ValueError("Image has no pixels")
        object.__setattr__(self, 'pixels', _freeze(pixels))

        if self.pixel_spacing is not None:
            spacing = tuple(float(s) for s in self.pixel_spacing)
            if len(spacing) != 2 or min(spacing) <= 0:
                raise ValueError(
                    f"pixel_spacing must be two positive values, got {self.pixel_spacing}"
                )
            object.__setattr__(self, 'pixel_spacing', spacing)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.pixels.shape

    @property
    def min_intensity(self) -> int:
        return self.pixels.min().item()

    @property
    def max_intensity(self) -> int:
        return self.pixels.max().item()

    @property
    def pixel_area_cm2(self) -> Optional[float]:
        """Area of a single pixel in cm² (None without pixel spacing)."""
        if self.pixel_spacing is None:
            return None
        return (self.pixel_spacing[0] * self.pixel_spacing[1]) / 100.0

    def crop(self, box: CropBox) -> 'Image':
        return Image(box.apply(self.pixels), self.pixel_spacing)


@dataclass(frozen=True)
class ThresholdPair:
    """Two intensity cut points splitting the intensity domain in three bands.

    Bands: dark (< low), mid (low..high inclusive) and bright (> high).
    """
    low: float
    high: float

    def __post_init__(self):
        if self.low > self.high:
            raise ValueError(f"low threshold {self.low} exceeds high threshold {self.high}")

    def band(self, grid: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return the dark, mid and bright masks of a grid."""
        dark = grid < self.low
        bright = grid > self.high
        return dark, ~dark & ~bright, bright


@dataclass(frozen=True)
class SeedPoint:
    """A (row, col) seed tagged with the tissue class and side it seeds."""
    row: int
    col: int
    tissue: TissueClass
    side: Side

    def validate(self, shape: Tuple[int, int]) -> 'SeedPoint':
        rows, cols = shape
        if not (0 <= self.row < rows and 0 <= self.col < cols):
            raise SeedOutOfBoundsError(
                f"Seed ({self.row}, {self.col}) outside grid of shape {shape}",
                side=self.side, tissue=self.tissue
            )
        return self


@dataclass
class Region:
    """A named mask with its area in physical or pixel units."""
    name: str
    mask: np.ndarray
    pixel_count: int
    area: float
    units: str


@dataclass
class CompartmentSplit:
    """One candidate extensor/flexor partition of a side's muscle mask.

    Attributes:
        vertices: Polygon vertices as supplied, (x, y) = (col, row)
        polygon_mask: Rasterized polygon over the side box
        muscle: Muscle mask the split was computed from (read-only)
        extensor: muscle minus polygon
        flexor: muscle intersected with polygon
    """
    vertices: np.ndarray
    polygon_mask: np.ndarray
    muscle: np.ndarray
    extensor: np.ndarray = field(init=False)
    flexor: np.ndarray = field(init=False)

    def __post_init__(self):
        self.extensor, self.flexor = split_compartments(self.muscle, self.polygon_mask)


# ---------------------------------------------------------------------------
# Mask algebra
# ---------------------------------------------------------------------------

def _check_shapes(*masks: np.ndarray) -> None:
    shapes = {m.shape for m in masks}
    if len(shapes) != 1:
        raise ValueError(f"Masks of different shapes cannot be combined: {sorted(shapes)}")


def mask_union(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    _check_shapes(a, b)
    return _freeze(np.logical_or(a, b))


def mask_intersection(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    _check_shapes(a, b)
    return _freeze(np.logical_and(a, b))


def mask_difference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixels in ``a`` that are not in ``b``."""
    _check_shapes(a, b)
    return _freeze(np.logical_and(a, np.logical_not(b)))


def split_compartments(muscle: np.ndarray,
                       polygon_mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a muscle mask into (extensor, flexor) using a flexor polygon mask.

    The two halves are exact complements within the muscle mask.
    """
    flexor = mask_intersection(muscle, polygon_mask)
    extensor = mask_difference(muscle, polygon_mask)
    return extensor, flexor


# ---------------------------------------------------------------------------
# Background cropping
# ---------------------------------------------------------------------------

def find_foreground_box(grid: np.ndarray, background: float) -> Optional[CropBox]:
    """Bounding box of pixels strictly brighter than ``background + 1``."""
    # All foreground pixels share label 1, so the bbox spans every piece
    props = regionprops((grid > background + 1).astype(np.uint8))
    if not props:
        return None
    min_row, min_col, max_row, max_col = props[0].bbox
    return CropBox(int(min_row), int(max_row), int(min_col), int(max_col))


def crop_background(image: Image,
                    background: Optional[float] = None) -> Tuple[CropBox, Image]:
    """Trim an image to the bounding box of its non-background pixels.

    Args:
        image: Full-frame image
        background: Empty background intensity (defaults to the image minimum)

    Returns:
        Tuple of the crop box and the cropped image

    Raises:
        EmptyImageError: If the whole image is background
    """
    if background is None:
        background = image.min_intensity
    box = find_foreground_box(image.pixels, background)
    if box is None:
        raise EmptyImageError(f"No pixel exceeds background level {background} + 1")
    logger.debug(f"Background crop box: {box}")
    return box, image.crop(box)


# ---------------------------------------------------------------------------
# Thresholding
# ---------------------------------------------------------------------------

def compute_thresholds(grid: np.ndarray) -> ThresholdPair:
    """Two-level Otsu thresholds for a grid.

    The returned pair bounds Otsu's middle class: ``low`` is its smallest and
    ``high`` its largest intensity, so the dark, mid and bright bands of the
    pair are exactly Otsu's three classes.

    Grids with fewer than three distinct intensities cannot be split in three
    classes; the extrema are returned instead.
    """
    lo, hi = grid.min().item(), grid.max().item()
    if np.unique(grid).size < 3:
        logger.debug("Fewer than 3 distinct intensities, using extrema as thresholds")
        return ThresholdPair(float(lo), float(hi))

    # Each Otsu class includes its upper cut point
    cut_low, cut_high = np.sort(threshold_multiotsu(grid, classes=3))
    middle = grid[(grid > cut_low) & (grid <= cut_high)]
    if middle.size == 0:
        level = float(np.clip(cut_high, lo, hi))
        return ThresholdPair(level, level)
    return ThresholdPair(float(middle.min()), float(middle.max()))


def apply_thresholds(grid: np.ndarray,
                     thresholds: ThresholdPair,
                     floor: int,
                     ceiling: int) -> np.ndarray:
    """Saturate the dark band to ``floor`` and the bright band to ``ceiling``."""
    dark, _, bright = thresholds.band(grid)
    result = np.array(grid, copy=True)
    result[dark] = floor
    result[bright] = ceiling
    return _freeze(result)


def isolate_mid_band(grid: np.ndarray,
                     thresholds: ThresholdPair,
                     band_value: int) -> np.ndarray:
    """Set mid-band pixels to ``band_value`` and zero every other pixel."""
    if band_value == 0:
        raise ValueError("band_value must differ from the excluded value 0")
    _, mid, _ = thresholds.band(grid)
    return _freeze(np.where(mid, band_value, 0).astype(np.int64))


# ---------------------------------------------------------------------------
# Region growing
# ---------------------------------------------------------------------------

class RegionGrower:
    """Seeded region growing with a seed-referenced tolerance.

    A pixel joins the region when it is connected to the seed through
    pixels that all lie within ``tolerance`` of the seed's own intensity.
    The comparison base never moves along the path, so tolerance does not
    compound over long regions.

    Attributes:
        tolerance: Maximum absolute intensity difference from the seed
        connectivity: 4 (edge neighbours) or 8 (edge and corner neighbours)
    """

    def __init__(self, tolerance: int = 1, connectivity: int = 8):
        if tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {tolerance}")
        if connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {connectivity}")
        self.tolerance = tolerance
        self.connectivity = connectivity

    def grow(self,
             grid: np.ndarray,
             seed: SeedPoint,
             excluded_value: Optional[int] = None) -> np.ndarray:
        """Grow the connected region around a seed.

        Args:
            grid: 2D intensity grid
            seed: Seed point (validated against the grid bounds)
            excluded_value: Intensity marking pixels removed by a prior masking
                step; a seed on such a pixel is rejected

        Returns:
            Read-only boolean mask with the grid's shape

        Raises:
            SeedOutOfBoundsError: If the seed is outside the grid
            SeedOnExcludedPixelError: If the seed pixel equals excluded_value
        """
        seed.validate(grid.shape)
        seed_value = grid[seed.row, seed.col]
        if excluded_value is not None and seed_value == excluded_value:
            raise SeedOnExcludedPixelError(
                f"Seed ({seed.row}, {seed.col}) lies on an excluded pixel",
                side=seed.side, tissue=seed.tissue
            )

        mask = flood(
            np.ascontiguousarray(grid),
            (seed.row, seed.col),
            connectivity=1 if self.connectivity == 4 else 2,
            tolerance=self.tolerance,
        )
        logger.debug(
            f"Grew {seed.side.value} {seed.tissue.value} from ({seed.row}, {seed.col}): "
            f"{int(mask.sum())} pixels"
        )
        return _freeze(mask.astype(bool))


# ---------------------------------------------------------------------------
# Hole filling
# ---------------------------------------------------------------------------

def fill_holes(mask: np.ndarray) -> np.ndarray:
    """Close background pockets that cannot be reached from the grid border."""
    return _freeze(ndimage.binary_fill_holes(mask).astype(bool))


# ---------------------------------------------------------------------------
# Polygon rasterization
# ---------------------------------------------------------------------------

def polygon_vertices(vertices: Sequence[Sequence[float]]) -> np.ndarray:
    """Normalize polygon vertices to an (N, 2) float array of (x, y).

    A closing vertex that repeats the first one is dropped.

    Raises:
        DegeneratePolygonError: If fewer than 3 distinct vertices remain
    """
    points = np.asarray(vertices, dtype=float).reshape(-1, 2)
    if len(points) > 1:
        # Repeated consecutive vertices would give zero-length edges
        keep = np.ones(len(points), dtype=bool)
        keep[1:] = np.any(np.diff(points, axis=0) != 0, axis=1)
        points = points[keep]
    if len(points) > 1 and np.array_equal(points[0], points[-1]):
        points = points[:-1]
    if len(np.unique(points, axis=0)) < 3:
        raise DegeneratePolygonError(
            f"Polygon needs at least 3 distinct vertices, got {len(np.unique(points, axis=0))}"
        )
    return points


def rasterize_polygon(vertices: Sequence[Sequence[float]],
                      shape: Tuple[int, int],
                      edge_tolerance: float = 1e-6) -> np.ndarray:
    """Rasterize a closed polygon into a boolean inclusion mask.

    Each pixel is treated as the point (x=col, y=row). Interior points come
    from matplotlib's even-odd point-in-path test, which leaves boundary
    points undefined; points lying on an edge are added explicitly.

    Args:
        vertices: Ordered (x, y) vertices, implicitly closed
        shape: (rows, cols) of the target grid
        edge_tolerance: Distance under which a pixel counts as on an edge

    Returns:
        Read-only boolean mask of the requested shape
    """
    points = polygon_vertices(vertices)
    rows, cols = np.mgrid[0:shape[0], 0:shape[1]]
    px = cols.astype(float)
    py = rows.astype(float)

    inside = Path(points).contains_points(
        np.column_stack([px.ravel(), py.ravel()])
    ).reshape(shape)
    on_edge = np.zeros(shape, dtype=bool)

    for (x1, y1), (x2, y2) in zip(points, np.roll(points, -1, axis=0)):
        dx, dy = x2 - x1, y2 - y1
        distance = np.abs((px - x1) * dy - (py - y1) * dx) / np.hypot(dx, dy)
        within = (
            (px >= min(x1, x2) - edge_tolerance) & (px <= max(x1, x2) + edge_tolerance) &
            (py >= min(y1, y2) - edge_tolerance) & (py <= max(y1, y2) + edge_tolerance)
        )
        on_edge |= within & (distance <= edge_tolerance)

    return _freeze(inside | on_edge)


# ---------------------------------------------------------------------------
# Derived tissue masks
# ---------------------------------------------------------------------------

def noncontractile_mask(muscle: np.ndarray,
                        femur: np.ndarray,
                        grid: np.ndarray,
                        thresholds: ThresholdPair) -> np.ndarray:
    """Bright inclusions inside the muscle envelope, femur and marrow excluded.

    Args:
        muscle: Grown muscle mask
        femur: Hole-filled femur mask
        grid: Intensity grid the masks were derived from
        thresholds: Threshold pair; pixels above ``high`` are noncontractile

    Returns:
        Read-only boolean mask
    """
    _check_shapes(muscle, femur, grid)
    envelope = mask_difference(fill_holes(muscle), femur)
    return mask_intersection(envelope, grid > thresholds.high)

"""
Thigh Muscle CSA Analyzer
=========================
Cross-sectional area measurement of thigh tissues from a single grayscale
MRI slice (T1 FFE) through both thighs.

For each thigh the analyzer measures:
- Extensor and flexor muscle CSA (split by a digitized flexor polygon)
- Total muscle CSA (extensor + flexor)
- Subcutaneous fat CSA
- Noncontractile element CSA (bright inclusions within the muscle envelope,
  femur and marrow excluded)

Pipeline:
1. Image loading (DICOM or raster, raw unscaled pixel values)
2. Background cropping
3. Two-level Otsu thresholding
4. Seeded region growing for fat, femur and muscle on each side
5. Extensor/flexor split, repeated until the split is approved
6. Area calculation in cm² (or pixel² when no pixel spacing is known)

Seeds and polygons are supplied by a Digitizer (see digitizer.py).

Author: Thigh Muscle CSA Project
License: BSD 3-Clause
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pydicom
from pydicom.misc import is_dicom as is_dicom_file
from skimage import io

from digitizer import Digitizer
from thigh_segmenter import (
    CompartmentSplit,
    CropBox,
    DegeneratePolygonError,
    EmptyImageError,
    Image,
    MissingPixelSpacingError,
    PolygonApprovalError,
    Region,
    RegionGrower,
    SeedPoint,
    Side,
    ThresholdPair,
    TissueClass,
    apply_thresholds,
    compute_thresholds,
    crop_background,
    fill_holes,
    find_foreground_box,
    isolate_mid_band,
    noncontractile_mask,
    polygon_vertices,
    rasterize_polygon,
)

logger = logging.getLogger(__name__)

UNITS_CM2 = 'cm^2'
UNITS_PIXEL2 = 'pixel^2'

# Study spreadsheet column name -> (side, SideAreas attribute)
STUDY_AREA_COLUMNS: List[Tuple[str, Side, str]] = [
    ('L Mus CSA Ext', Side.LEFT, 'extensor'),
    ('R Mus CSA Ext', Side.RIGHT, 'extensor'),
    ('L Mus CSA Flex', Side.LEFT, 'flexor'),
    ('R Mus CSA Flex', Side.RIGHT, 'flexor'),
    ('L Mus CSA total', Side.LEFT, 'muscle_total'),
    ('R Mus CSA total', Side.RIGHT, 'muscle_total'),
    ('L SubFat CSA', Side.LEFT, 'fat'),
    ('R SubFat CSA', Side.RIGHT, 'fat'),
    ('L Non Con CSA', Side.LEFT, 'noncontractile'),
    ('R Non Con CSA', Side.RIGHT, 'noncontractile'),
]


class UnitPolicy(Enum):
    """How to handle images without physical pixel spacing.

    LENIENT: report areas in pixel² and log a warning
    STRICT: abort the run (longitudinal studies need comparable units)
    """
    LENIENT = "lenient"
    STRICT = "strict"


class OutputPolicy(Enum):
    """Where results go once a run completes."""
    SINGLE_REPORT = "single-report"
    APPEND_TO_STUDY_LOG = "append-to-study-log"


class SplitState(Enum):
    """States of the extensor/flexor approval loop."""
    AWAITING_POLYGON = "awaiting polygon"
    SPLITTING = "splitting"
    AWAITING_APPROVAL = "awaiting approval"
    REJECTED = "rejected"
    APPROVED = "approved"


class DisplayState(Enum):
    """Which muscle overlay the visualizer shows."""
    WHOLE = "Whole Muscle"
    EXTENSORS = "Extensors"
    FLEXORS = "Flexors"


@dataclass
class AnalysisConfig:
    """Configuration for one analysis run.

    Attributes:
        tolerance: Region growing tolerance (intensity units from the seed)
        connectivity: Region growing neighbourhood, 4 or 8
        unit_policy: Handling of missing pixel spacing
        output_policy: Single report or append to the study log
        max_polygon_attempts: Abort after this many rejected splits per side
            (None waits for approval indefinitely)
    """
    tolerance: int = 1
    connectivity: int = 8
    unit_policy: UnitPolicy = UnitPolicy.LENIENT
    output_policy: OutputPolicy = OutputPolicy.SINGLE_REPORT
    max_polygon_attempts: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {self.tolerance}")
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.max_polygon_attempts is not None and self.max_polygon_attempts < 1:
            raise ValueError(
                f"max_polygon_attempts must be >= 1, got {self.max_polygon_attempts}"
            )
        if isinstance(self.unit_policy, str):
            self.unit_policy = UnitPolicy(self.unit_policy)
        if isinstance(self.output_policy, str):
            self.output_policy = OutputPolicy(self.output_policy)

    @classmethod
    def for_reliability_study(cls, **overrides) -> 'AnalysisConfig':
        """Preset for the reliability study: strict units, study log output."""
        settings = dict(unit_policy=UnitPolicy.STRICT,
                        output_policy=OutputPolicy.APPEND_TO_STUDY_LOG)
        settings.update(overrides)
        return cls(**settings)


@dataclass
class SideAreas:
    """Cross-sectional areas for one thigh."""
    extensor: float
    flexor: float
    muscle_total: float
    fat: float
    noncontractile: float


@dataclass
class AreaReport:
    """Final per-side area report for one image."""
    left: SideAreas
    right: SideAreas
    units: str

    def side(self, side: Side) -> SideAreas:
        return self.left if side is Side.LEFT else self.right

    def to_dict(self) -> Dict[str, float]:
        """Flat dictionary keyed by the study spreadsheet column names."""
        return {
            column: getattr(self.side(side), attr)
            for column, side, attr in STUDY_AREA_COLUMNS
        }

    def format_text(self, title: str = "") -> str:
        """Plain-text summary in the layout of the console report."""
        u = self.units
        lines = [f"MUSCLE CROSS-SECTIONAL AREAS FOR {title}"]
        for side in Side:
            a = self.side(side)
            lines += [
                f"{side.value.capitalize()} Thigh Cross-Sectional Area = {a.muscle_total:.1f} {u}",
                f"  Extensors Cross-Sectional Area = {a.extensor:.1f} {u}",
                f"  Flexors Cross-Sectional Area = {a.flexor:.1f} {u}",
            ]
        lines += ["", f"SUBCUTANEOUS FAT CROSS-SECTIONAL AREAS FOR {title}"]
        lines += [f"{s.value.capitalize()} Thigh Cross-Sectional Area = "
                  f"{self.side(s).fat:.1f} {u}" for s in Side]
        lines += ["", f"NONCONTRACTILE ELEMENTS CROSS-SECTIONAL AREAS FOR {title}"]
        lines += [f"{s.value.capitalize()} Thigh Cross-Sectional Area = "
                  f"{self.side(s).noncontractile:.1f} {u}" for s in Side]
        return "\n".join(lines)


class ImageLoader:
    """Loads a thigh image from DICOM or a common raster format.

    DICOM pixel values are used raw (no rescale slope/intercept); the
    thresholds are derived from the image itself so scaling is irrelevant.

    Attributes:
        image_path: Path to the image file
        dicom_data: The pydicom dataset (None for raster images)
        pixels: Raw 2D intensity grid
        pixel_spacing: Physical spacing in mm (row, column), None if unknown
    """

    def __init__(self, image_path: Union[str, Path], require_dicom: bool = False):
        """Initialize the loader with a file path.

        Args:
            image_path: Path to the image file
            require_dicom: Reject anything that is not a DICOM file

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If require_dicom is set and the file is not DICOM
        """
        self.image_path = str(image_path)
        self.require_dicom = require_dicom
        self.dicom_data: Optional[pydicom.Dataset] = None
        self.pixels: Optional[np.ndarray] = None
        self.pixel_spacing: Optional[Tuple[float, float]] = None

        self._load()

    def _load(self) -> None:
        if not Path(self.image_path).exists():
            raise FileNotFoundError(self.image_path)

        if is_dicom_file(self.image_path):
            self.dicom_data = pydicom.dcmread(self.image_path)
            pixels = self.dicom_data.pixel_array
            # Multi-frame data is (frames, rows, cols); only the first slice is used
            frames = int(getattr(self.dicom_data, 'NumberOfFrames', 1) or 1)
            if frames > 1 and pixels.ndim == 3:
                logger.info(f"{self.image_path} has {frames} frames, using the first")
                pixels = pixels[0]
            spacing = getattr(self.dicom_data, 'PixelSpacing', None)
            if spacing is not None:
                self.pixel_spacing = tuple(float(x) for x in spacing)
        elif self.require_dicom:
            raise ValueError(f"File is not a DICOM file: {self.image_path}")
        else:
            pixels = io.imread(self.image_path)

        # Gray scale is assumed, all channels equal
        if pixels.ndim > 2:
            pixels = pixels[..., 0]
        self.pixels = pixels

        if self.pixel_spacing is None:
            logger.debug(f"No pixel spacing in {self.image_path}")

    @property
    def is_dicom(self) -> bool:
        return self.dicom_data is not None

    @property
    def mri_date(self) -> Optional[date]:
        """Series date of the scan, if recorded."""
        value = getattr(self.dicom_data, 'SeriesDate', None) if self.is_dicom else None
        if not value:
            return None
        return datetime.strptime(str(value), '%Y%m%d').date()

    def to_image(self) -> Image:
        return Image(self.pixels, self.pixel_spacing)

    def get_metadata(self) -> Dict[str, Any]:
        """Extract relevant image metadata.

        Returns:
            Dictionary containing patient and scan metadata
        """
        metadata = {
            'image_path': self.image_path,
            'is_dicom': self.is_dicom,
            'rows': self.pixels.shape[0],
            'columns': self.pixels.shape[1],
            'pixel_spacing': self.pixel_spacing,
            'mri_date': self.mri_date,
        }
        if self.is_dicom:
            ds = self.dicom_data
            metadata.update({
                'patient_id': getattr(ds, 'PatientID', 'Unknown'),
                'series_description': getattr(ds, 'SeriesDescription', 'Unknown'),
                'slice_location': getattr(ds, 'SliceLocation', None),
            })
        return metadata


class AreaCalculator:
    """Converts mask pixel counts to cross-sectional areas.

    With pixel spacing (mm) the area of one pixel in cm² is
        pixel_area = row_spacing * col_spacing / 100
    Without it, areas are plain pixel counts in pixel².

    Attributes:
        pixel_area: Area of one pixel in the reported units
        units: 'cm^2' or 'pixel^2'
    """

    def __init__(self,
                 pixel_spacing: Optional[Tuple[float, float]],
                 unit_policy: UnitPolicy = UnitPolicy.LENIENT):
        """Initialize the area calculator.

        Raises:
            MissingPixelSpacingError: Under the strict policy without spacing
        """
        if pixel_spacing is None:
            if unit_policy is UnitPolicy.STRICT:
                raise MissingPixelSpacingError(
                    "Pixel size not found! Areas would not be in cm^2"
                )
            logger.warning("Pixel size not found! Cross-sectional areas will be "
                           "in pixel^2 and not cm^2!")
            self.pixel_area = 1.0
            self.units = UNITS_PIXEL2
        else:
            self.pixel_area = float(pixel_spacing[0]) * float(pixel_spacing[1]) / 100.0
            self.units = UNITS_CM2

    def area(self, mask: np.ndarray) -> float:
        return int(np.count_nonzero(mask)) * self.pixel_area

    def region(self, name: str, mask: np.ndarray) -> Region:
        count = int(np.count_nonzero(mask))
        return Region(name, mask, count, count * self.pixel_area, self.units)


@dataclass
class SessionContext:
    """Per-run working set shared by both sides.

    Attributes:
        image: Full-frame input image
        crop_box: Background crop box in full-frame coordinates
        cropped: Cropped image; all side coordinates refer to it
        thresholds: Two-level Otsu thresholds of the cropped image
        floor: Value the dark band is saturated to (image minimum)
        ceiling: Value the bright band is saturated to (image maximum)
        thresholded: Cropped grid with saturated dark and bright bands
        muscle_grid: Mid band isolated, everything else zeroed
    """
    image: Image
    crop_box: CropBox
    cropped: Image
    thresholds: ThresholdPair
    floor: int
    ceiling: int
    thresholded: np.ndarray
    muscle_grid: np.ndarray


@dataclass
class SideResult:
    """Masks, split and areas for one thigh.

    All masks are in the side box frame (the bounding box of the side's
    subcutaneous fat within the cropped image).
    """
    side: Side
    seeds: Dict[TissueClass, SeedPoint]
    box: CropBox
    fat: np.ndarray
    femur: np.ndarray
    muscle: np.ndarray
    noncontractile: np.ndarray
    split: CompartmentSplit
    polygon_attempts: int
    areas: SideAreas
    femur_muscle_overlap: int = 0
    muscle_outside_box: int = 0

    @property
    def extensor(self) -> np.ndarray:
        return self.split.extensor

    @property
    def flexor(self) -> np.ndarray:
        return self.split.flexor


@dataclass
class AnalysisResult:
    """Outcome of a full pipeline run."""
    report: AreaReport
    sides: Dict[Side, SideResult]
    context: SessionContext
    name: str = ""

    @property
    def thresholds(self) -> ThresholdPair:
        return self.context.thresholds


@dataclass
class _GrownSide:
    seeds: Dict[TissueClass, SeedPoint] = field(default_factory=dict)
    box: Optional[CropBox] = None
    fat: Optional[np.ndarray] = None
    femur: Optional[np.ndarray] = None
    muscle: Optional[np.ndarray] = None


class ThighAnalyzer:
    """Main orchestrator for thigh cross-sectional area analysis.

    Coordinates all analysis steps for both thighs:
    1. Background cropping and thresholding
    2. Seed acquisition (fat, femur, muscle; left then right)
    3. Region growing and hole filling
    4. Extensor/flexor split with approve/reject loop
    5. Noncontractile elements
    6. Area calculation

    Example usage:
        loader = ImageLoader("thigh.dcm")
        digitizer = ScriptedDigitizer.from_json("thigh_inputs.json")
        analyzer = ThighAnalyzer(loader.to_image(), digitizer)
        result = analyzer.analyze()
        print(result.report.format_text("thigh"))

    Attributes:
        image: Input image
        digitizer: Source of seeds, polygons and approvals
        config: Analysis configuration
        grower: Region grower configured from config
    """

    def __init__(self,
                 image: Image,
                 digitizer: Digitizer,
                 config: Optional[AnalysisConfig] = None,
                 name: str = ""):
        self.image = image
        self.digitizer = digitizer
        self.config = config or AnalysisConfig()
        self.name = name
        self.grower = RegionGrower(self.config.tolerance, self.config.connectivity)
        self._result: Optional[AnalysisResult] = None

    def prepare(self) -> SessionContext:
        """Crop the background, threshold and build the working grids."""
        crop_box, cropped = crop_background(self.image)
        thresholds = compute_thresholds(cropped.pixels)
        logger.info(f"Otsu thresholds for {self.name or 'image'}: "
                    f"low={thresholds.low:g}, high={thresholds.high:g}")

        floor = self.image.min_intensity
        ceiling = self.image.max_intensity
        thresholded = apply_thresholds(cropped.pixels, thresholds, floor, ceiling)
        # Band value must stay out of tolerance reach of the zeroed pixels
        band_value = max(ceiling, self.config.tolerance + 1)
        muscle_grid = isolate_mid_band(thresholded, thresholds, band_value)

        return SessionContext(
            image=self.image,
            crop_box=crop_box,
            cropped=cropped,
            thresholds=thresholds,
            floor=floor,
            ceiling=ceiling,
            thresholded=thresholded,
            muscle_grid=muscle_grid,
        )

    def analyze(self) -> AnalysisResult:
        """Run the full pipeline.

        Returns:
            AnalysisResult with the area report and per-side masks

        Raises:
            SegmentationError: On any invalid input; no partial report is kept
        """
        self._result = None
        calculator = AreaCalculator(self.image.pixel_spacing, self.config.unit_policy)
        context = self.prepare()

        grown = {side: self._grow_side(context, side) for side in Side}
        sides = {
            side: self._finish_side(context, side, grown[side], calculator)
            for side in Side
        }

        report = AreaReport(
            left=sides[Side.LEFT].areas,
            right=sides[Side.RIGHT].areas,
            units=calculator.units,
        )
        self._result = AnalysisResult(report, sides, context, self.name)
        logger.info(f"Analysis complete for {self.name or 'image'} ({report.units})")
        return self._result

    def _seed(self, context: SessionContext, side: Side, tissue: TissueClass) -> SeedPoint:
        row, col = self.digitizer.request_seed(side, tissue, context.thresholded)
        return SeedPoint(int(row), int(col), tissue, side).validate(context.thresholded.shape)

    def _grow_side(self, context: SessionContext, side: Side) -> _GrownSide:
        grown = _GrownSide()
        pixels = context.cropped.pixels

        seed = grown.seeds[TissueClass.FAT] = self._seed(context, side, TissueClass.FAT)
        grown.fat = self.grower.grow(context.thresholded, seed)
        grown.box = find_foreground_box(np.where(grown.fat, pixels, context.floor),
                                        context.floor)
        if grown.box is None:
            raise EmptyImageError("Subcutaneous fat region has no foreground pixels",
                                  side=side, tissue=TissueClass.FAT)

        seed = grown.seeds[TissueClass.FEMUR] = self._seed(context, side, TissueClass.FEMUR)
        grown.femur = fill_holes(self.grower.grow(context.thresholded, seed))

        seed = grown.seeds[TissueClass.MUSCLE] = self._seed(context, side, TissueClass.MUSCLE)
        grown.muscle = self.grower.grow(context.muscle_grid, seed, excluded_value=0)
        return grown

    def _finish_side(self,
                     context: SessionContext,
                     side: Side,
                     grown: _GrownSide,
                     calculator: AreaCalculator) -> SideResult:
        box = grown.box
        muscle = box.apply(grown.muscle)

        outside = int(grown.muscle.sum()) - int(muscle.sum())
        if outside:
            logger.warning(f"{outside} {side.value} muscle pixels fall outside the "
                           f"subcutaneous fat box and are not measured")
        # Femur and muscle are grown from different bands and should not meet
        overlap = int(np.count_nonzero(grown.femur & grown.muscle))
        if overlap:
            logger.warning(f"{side.value} femur and muscle masks overlap by {overlap} pixels")

        split, attempts = self._approve_split(side, muscle, box.apply(context.cropped.pixels))

        noncontractile = box.apply(noncontractile_mask(
            grown.muscle, grown.femur, context.cropped.pixels, context.thresholds
        ))

        areas = SideAreas(
            extensor=calculator.area(split.extensor),
            flexor=calculator.area(split.flexor),
            muscle_total=calculator.area(muscle),
            fat=calculator.area(grown.fat),
            noncontractile=calculator.area(noncontractile),
        )
        logger.info(f"{side.value.capitalize()} thigh: muscle={areas.muscle_total:.1f}, "
                    f"extensor={areas.extensor:.1f}, flexor={areas.flexor:.1f}, "
                    f"fat={areas.fat:.1f}, noncontractile={areas.noncontractile:.1f} "
                    f"{calculator.units}")

        return SideResult(
            side=side,
            seeds=grown.seeds,
            box=box,
            fat=box.apply(grown.fat),
            femur=box.apply(grown.femur),
            muscle=muscle,
            noncontractile=noncontractile,
            split=split,
            polygon_attempts=attempts,
            areas=areas,
            femur_muscle_overlap=overlap,
            muscle_outside_box=outside,
        )

    def _approve_split(self,
                       side: Side,
                       muscle: np.ndarray,
                       side_pixels: np.ndarray) -> Tuple[CompartmentSplit, int]:
        """Request polygons until the extensor/flexor split is approved."""
        state = SplitState.AWAITING_POLYGON
        limit = self.config.max_polygon_attempts
        attempts = 0
        vertices = None
        split = None

        while state is not SplitState.APPROVED:
            if state is SplitState.AWAITING_POLYGON:
                if limit is not None and attempts >= limit:
                    raise PolygonApprovalError(
                        f"Split not approved after {attempts} polygons", side=side
                    )
                vertices = self.digitizer.request_polygon(side, side_pixels)
                attempts += 1
                state = SplitState.SPLITTING

            elif state is SplitState.SPLITTING:
                try:
                    points = polygon_vertices(vertices)
                    polygon_mask = rasterize_polygon(points, muscle.shape)
                except DegeneratePolygonError as e:
                    raise DegeneratePolygonError(str(e), side=side) from e
                split = CompartmentSplit(points, polygon_mask, muscle)
                state = SplitState.AWAITING_APPROVAL

            elif state is SplitState.AWAITING_APPROVAL:
                if self.digitizer.review_split(side, split):
                    state = SplitState.APPROVED
                else:
                    state = SplitState.REJECTED

            elif state is SplitState.REJECTED:
                logger.info(f"{side.value.capitalize()} extensor/flexor split rejected "
                            f"(attempt {attempts})")
                split = None
                state = SplitState.AWAITING_POLYGON

        return split, attempts

    @property
    def result(self) -> AnalysisResult:
        if self._result is None:
            raise RuntimeError("Call analyze() before getting results")
        return self._result

    def get_results_dict(self) -> Dict[str, float]:
        """Get analysis results as a flat dictionary.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        return self.result.report.to_dict()

    def save_visualization(self, output_path: str, **kwargs) -> None:
        """Write the multi-page figure report.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        Visualizer(self.result).save_report(output_path, **kwargs)

    def save_side_images(self, output_stem: str) -> Dict[Side, str]:
        """Write each thigh's fat-masked side-box image to a 16-bit TIF.

        Intensities are scaled so each side's maximum maps to 65535. Files
        are named ``<output_stem>L.tif`` and ``<output_stem>R.tif``.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        result = self.result
        paths = {}
        for side, side_result in result.sides.items():
            pixels = side_result.box.apply(result.context.cropped.pixels)
            side_pixels = np.where(side_result.fat, pixels, 0).astype(float)
            peak = side_pixels.max() or 1.0
            scaled = np.round(side_pixels * 65535 / peak).astype(np.uint16)

            path = f"{output_stem}{side.name[0]}.tif"
            io.imsave(path, scaled, check_contrast=False)
            paths[side] = path
        logger.info(f"Side images written to {output_stem}L.tif and {output_stem}R.tif")
        return paths


class Visualizer:
    """Renders analysis results with matplotlib.

    Attributes:
        result: AnalysisResult to render
    """

    def __init__(self, result: AnalysisResult):
        self.result = result

    @staticmethod
    def threshold_colormap():
        from matplotlib.colors import ListedColormap

        colors = np.column_stack([np.linspace(0, 1, 128)] * 3)
        colors[0] = (1.0, 0.0, 0.0)
        colors[-1] = (0.0, 0.7, 0.0)
        return ListedColormap(colors)

    def render_split(self, ax, side: Side, state: DisplayState = DisplayState.WHOLE,
                     show_polygon: bool = True) -> None:
        """Draw one side's muscle image in the given display state."""
        side_result = self.result.sides[side]
        pixels = side_result.box.apply(self.result.context.cropped.pixels)
        mask = {
            DisplayState.WHOLE: side_result.muscle,
            DisplayState.EXTENSORS: side_result.extensor,
            DisplayState.FLEXORS: side_result.flexor,
        }[state]
        ax.imshow(np.where(mask, pixels, 0), cmap='gray')
        if show_polygon:
            vertices = side_result.split.vertices
            outline = np.vstack([vertices, vertices[:1]])
            ax.plot(outline[:, 0], outline[:, 1], 'r-', linewidth=1)
        ax.set_title(f"{side.value.capitalize()} Thigh Muscle - {state.value}")
        ax.axis('off')

    def _masked_page(self, pdf, side: Side, mask: np.ndarray, label: str, area: float) -> None:
        import matplotlib.pyplot as plt

        side_result = self.result.sides[side]
        pixels = side_result.box.apply(self.result.context.cropped.pixels)
        fig, ax = plt.subplots(figsize=(11, 8.5))
        ax.imshow(np.where(mask, pixels, 0), cmap='gray')
        ax.text(2, 2, f"Cross-sectional area = {area:.1f} {self.result.report.units}",
                color='w', fontsize=11, fontweight='bold', va='top')
        ax.set_title(f"{self.result.name}\n{side.value.capitalize()} Thigh {label}")
        ax.axis('off')
        pdf.savefig(fig)
        plt.close(fig)

    def save_report(self, output_path: str, dpi: int = 150) -> None:
        """Save a multi-page PDF with all intermediate and final images."""
        import matplotlib.pyplot as plt
        from matplotlib.backends.backend_pdf import PdfPages

        context = self.result.context
        thresholds = context.thresholds

        with PdfPages(output_path) as pdf:
            fig, ax = plt.subplots(figsize=(11, 8.5))
            ax.imshow(context.cropped.pixels, cmap='gray',
                      vmin=context.floor, vmax=context.ceiling)
            ax.set_title(f"{self.result.name}\nCropped T1 FFE Image")
            ax.axis('off')
            pdf.savefig(fig, dpi=dpi)
            plt.close(fig)

            fig, ax = plt.subplots(figsize=(11, 8.5))
            ax.hist(context.cropped.pixels.ravel(), bins=256, color=(0, 0, 0.8))
            ax.axvline(thresholds.low, color='r', linewidth=1.0)
            ax.axvline(thresholds.high, color=(0, 0.7, 0), linewidth=1.0)
            ax.set_xlabel('Signal Intensity')
            ax.set_ylabel('Frequency')
            ax.set_title('T1 FFE Image Histogram')
            pdf.savefig(fig, dpi=dpi)
            plt.close(fig)

            fig, ax = plt.subplots(figsize=(11, 8.5))
            ax.imshow(context.thresholded, cmap=self.threshold_colormap(),
                      vmin=context.floor, vmax=context.ceiling)
            ax.set_title(f"{self.result.name}\nT1 FFE Image with Thresholds")
            ax.axis('off')
            pdf.savefig(fig, dpi=dpi)
            plt.close(fig)

            for side in Side:
                areas = self.result.report.side(side)
                side_result = self.result.sides[side]

                fig, axes = plt.subplots(1, 3, figsize=(16, 6))
                for ax, state in zip(axes, DisplayState):
                    self.render_split(ax, side, state)
                fig.suptitle(
                    f"Extensors {areas.extensor:.1f} / Flexors {areas.flexor:.1f} / "
                    f"Total {areas.muscle_total:.1f} {self.result.report.units}"
                )
                pdf.savefig(fig, dpi=dpi)
                plt.close(fig)

                self._masked_page(pdf, side, side_result.fat,
                                  'Subcutaneous Fat', areas.fat)
                self._masked_page(pdf, side, side_result.noncontractile,
                                  'Noncontractile Elements', areas.noncontractile)


# Convenience function for quick analysis
def analyze_thigh_image(image_path: str,
                        digitizer: Digitizer,
                        config: Optional[AnalysisConfig] = None,
                        output_report_path: Optional[str] = None) -> AnalysisResult:
    """Convenience function for single-image analysis.

    Args:
        image_path: Path to the image file
        digitizer: Source of seeds, polygons and approvals
        config: Analysis configuration (defaults if None)
        output_report_path: Optional path for the PDF figure report

    Returns:
        AnalysisResult with the area report
    """
    loader = ImageLoader(image_path)
    analyzer = ThighAnalyzer(loader.to_image(), digitizer, config,
                             name=Path(image_path).stem)
    result = analyzer.analyze()

    if output_report_path:
        analyzer.save_visualization(output_report_path)

    return result

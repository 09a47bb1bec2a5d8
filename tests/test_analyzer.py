import logging

import numpy as np
import pytest
from skimage import io

from conftest import (
    EXTENSOR_PIXELS,
    FAT,
    FAT_PIXELS,
    FLEXOR_PIXELS,
    FLEXOR_POLYGON,
    MUSCLE_PIXELS,
    NONCONTRACTILE_PIXELS,
    RIGHT_OFFSET,
    phantom_inputs,
    write_dicom,
)
from digitizer import ScriptedDigitizer
from thigh_analyzer import (
    UNITS_CM2,
    UNITS_PIXEL2,
    AnalysisConfig,
    AreaCalculator,
    ImageLoader,
    OutputPolicy,
    ThighAnalyzer,
    UnitPolicy,
    analyze_thigh_image,
)
from thigh_segmenter import (
    DegeneratePolygonError,
    Image,
    MissingPixelSpacingError,
    PolygonApprovalError,
    SeedOnExcludedPixelError,
    SeedOutOfBoundsError,
    Side,
    TissueClass,
)

PIXEL_AREA = 0.5 * 0.5 / 100


def run(image, inputs=None, config=None):
    digitizer = ScriptedDigitizer.from_dict(inputs or phantom_inputs())
    analyzer = ThighAnalyzer(image, digitizer, config, name='phantom')
    return analyzer, digitizer, analyzer.analyze()


class TestAreaCalculator:

    def test_physical_units(self):
        mask = np.zeros((40, 40), dtype=bool)
        mask[:20, :20] = True
        for policy in UnitPolicy:
            calculator = AreaCalculator((0.5, 0.5), policy)
            assert calculator.area(mask) == pytest.approx(1.0)
            assert calculator.units == UNITS_CM2

    def test_lenient_without_spacing(self, caplog):
        mask = np.ones((20, 20), dtype=bool)
        with caplog.at_level(logging.WARNING):
            calculator = AreaCalculator(None, UnitPolicy.LENIENT)
        assert calculator.area(mask) == 400
        assert calculator.units == UNITS_PIXEL2
        assert "Pixel size not found" in caplog.text

    def test_strict_without_spacing(self):
        with pytest.raises(MissingPixelSpacingError):
            AreaCalculator(None, UnitPolicy.STRICT)

    def test_region(self):
        region = AreaCalculator((1.0, 2.0)).region('left fat', np.eye(3, dtype=bool))
        assert region.pixel_count == 3
        assert region.area == pytest.approx(0.06)
        assert region.units == UNITS_CM2


class TestAnalysisConfig:

    def test_defaults(self):
        config = AnalysisConfig()
        assert config.tolerance == 1
        assert config.connectivity == 8
        assert config.unit_policy is UnitPolicy.LENIENT
        assert config.output_policy is OutputPolicy.SINGLE_REPORT

    def test_reliability_preset(self):
        config = AnalysisConfig.for_reliability_study(max_polygon_attempts=3)
        assert config.unit_policy is UnitPolicy.STRICT
        assert config.output_policy is OutputPolicy.APPEND_TO_STUDY_LOG
        assert config.max_polygon_attempts == 3

    def test_policies_from_strings(self):
        config = AnalysisConfig(unit_policy='strict', output_policy='append-to-study-log')
        assert config.unit_policy is UnitPolicy.STRICT
        assert config.output_policy is OutputPolicy.APPEND_TO_STUDY_LOG

    @pytest.mark.parametrize("kwargs", [
        {'tolerance': -1},
        {'connectivity': 5},
        {'max_polygon_attempts': 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            AnalysisConfig(**kwargs)


class TestThighAnalyzer:

    def test_phantom_areas(self, phantom_image):
        _, _, result = run(phantom_image)
        assert result.report.units == UNITS_CM2
        for side in Side:
            areas = result.report.side(side)
            assert areas.muscle_total == pytest.approx(MUSCLE_PIXELS * PIXEL_AREA)
            assert areas.extensor == pytest.approx(EXTENSOR_PIXELS * PIXEL_AREA)
            assert areas.flexor == pytest.approx(FLEXOR_PIXELS * PIXEL_AREA)
            assert areas.fat == pytest.approx(FAT_PIXELS * PIXEL_AREA)
            assert areas.noncontractile == pytest.approx(NONCONTRACTILE_PIXELS * PIXEL_AREA)

    def test_extensor_plus_flexor_is_total(self, phantom_image):
        polygon = [[0, 0], [30, 8], [49, 30], [12, 40]]
        inputs = phantom_inputs(polygons={'left': [polygon], 'right': [polygon]})
        _, _, result = run(phantom_image, inputs)
        for side in Side:
            areas = result.report.side(side)
            assert areas.extensor + areas.flexor == pytest.approx(areas.muscle_total)

    def test_side_masks(self, phantom_image):
        _, _, result = run(phantom_image)
        left = result.sides[Side.LEFT]
        right = result.sides[Side.RIGHT]
        assert left.box.shape == (50, 50)
        assert right.box.col_start == RIGHT_OFFSET
        assert left.femur.sum() == 100
        assert left.noncontractile[10:12, 10:12].all()
        assert left.femur_muscle_overlap == 0
        assert left.muscle_outside_box == 0
        np.testing.assert_array_equal(left.extensor | left.flexor, left.muscle)

    def test_session_context(self, phantom_image):
        _, _, result = run(phantom_image)
        context = result.context
        assert context.cropped.shape == (50, 105)
        assert (result.thresholds.low, result.thresholds.high) == (100, 100)
        assert context.thresholded.max() == FAT
        assert set(np.unique(context.muscle_grid)) == {0, FAT}

    def test_request_order(self, phantom_image):
        _, digitizer, _ = run(phantom_image)
        seeds = [r[1:] for r in digitizer.requests if r[0] == 'seed']
        assert seeds == [
            ('left', 'fat'), ('left', 'femur'), ('left', 'muscle'),
            ('right', 'fat'), ('right', 'femur'), ('right', 'muscle'),
        ]
        assert [r[0] for r in digitizer.requests[6:]] == ['polygon', 'review', 'polygon', 'review']

    def test_rejections_leave_muscle_unchanged(self, phantom_image):
        seen = []

        class RecordingDigitizer(ScriptedDigitizer):
            def review_split(self, side, split):
                seen.append((side, split.muscle.copy(), split.muscle))
                return super().review_split(side, split)

        bad = [[0, 0], [49, 0], [49, 10], [0, 10]]
        inputs = phantom_inputs(
            approvals={'left': [False, False, False, True]},
            polygons={'left': [bad, bad, bad, FLEXOR_POLYGON], 'right': [FLEXOR_POLYGON]},
        )
        digitizer = RecordingDigitizer.from_dict(inputs)
        result = ThighAnalyzer(phantom_image, digitizer).analyze()

        left = [entry for entry in seen if entry[0] is Side.LEFT]
        assert len(left) == 4
        for _, snapshot, muscle in left:
            np.testing.assert_array_equal(snapshot, left[0][1])
            assert not muscle.flags.writeable
        assert result.sides[Side.LEFT].polygon_attempts == 4
        assert result.sides[Side.RIGHT].polygon_attempts == 1
        assert result.sides[Side.LEFT].seeds[TissueClass.MUSCLE].row == 15
        assert result.report.left.flexor == pytest.approx(FLEXOR_PIXELS * PIXEL_AREA)

    def test_max_polygon_attempts(self, phantom_image):
        inputs = phantom_inputs(approvals={'left': [False, False]})
        with pytest.raises(PolygonApprovalError) as excinfo:
            run(phantom_image, inputs, AnalysisConfig(max_polygon_attempts=2))
        assert excinfo.value.side is Side.LEFT

    def test_degenerate_polygon_names_side(self, phantom_image):
        inputs = phantom_inputs(polygons={'left': [FLEXOR_POLYGON], 'right': [[[1, 1], [2, 2]]]})
        with pytest.raises(DegeneratePolygonError) as excinfo:
            run(phantom_image, inputs)
        assert excinfo.value.side is Side.RIGHT

    def test_muscle_seed_outside_mid_band(self, phantom_image):
        inputs = phantom_inputs()
        inputs['seeds']['right']['muscle'] = [2, RIGHT_OFFSET + 2]   # on fat
        with pytest.raises(SeedOnExcludedPixelError) as excinfo:
            run(phantom_image, inputs)
        assert excinfo.value.side is Side.RIGHT
        assert excinfo.value.tissue is TissueClass.MUSCLE

    def test_seed_out_of_bounds(self, phantom_image):
        inputs = phantom_inputs()
        inputs['seeds']['left']['femur'] = [500, 3]
        with pytest.raises(SeedOutOfBoundsError) as excinfo:
            run(phantom_image, inputs)
        assert excinfo.value.tissue is TissueClass.FEMUR

    def test_lenient_pixel_units(self, phantom):
        _, _, result = run(Image(phantom))
        assert result.report.units == UNITS_PIXEL2
        assert result.report.left.muscle_total == MUSCLE_PIXELS

    def test_strict_fails_before_any_request(self, phantom):
        digitizer = ScriptedDigitizer.from_dict(phantom_inputs())
        analyzer = ThighAnalyzer(Image(phantom), digitizer,
                                 AnalysisConfig(unit_policy=UnitPolicy.STRICT))
        with pytest.raises(MissingPixelSpacingError):
            analyzer.analyze()
        assert digitizer.requests == []
        with pytest.raises(RuntimeError):
            analyzer.get_results_dict()

    def test_results_dict_and_text(self, phantom_image):
        analyzer, _, result = run(phantom_image)
        values = analyzer.get_results_dict()
        assert values['L Mus CSA total'] == pytest.approx(MUSCLE_PIXELS * PIXEL_AREA)
        assert values['R SubFat CSA'] == pytest.approx(FAT_PIXELS * PIXEL_AREA)
        assert len(values) == 10
        text = result.report.format_text('phantom')
        assert "MUSCLE CROSS-SECTIONAL AREAS FOR phantom" in text
        assert "Right Thigh Cross-Sectional Area = 3.7 cm^2" in text

    def test_save_visualization(self, phantom_image, tmp_path):
        import matplotlib
        matplotlib.use('Agg')

        analyzer, _, _ = run(phantom_image)
        output = tmp_path / 'report.pdf'
        analyzer.save_visualization(str(output))
        assert output.stat().st_size > 0

    def test_save_side_images(self, phantom_image, tmp_path):
        analyzer, _, _ = run(phantom_image)
        paths = analyzer.save_side_images(str(tmp_path / 'phantom'))
        assert paths[Side.LEFT].endswith('phantomL.tif')
        assert paths[Side.RIGHT].endswith('phantomR.tif')

        for side in Side:
            written = io.imread(paths[side])
            assert written.shape == (50, 50)
            assert written.dtype == np.uint16
            assert written.max() == 65535
            assert np.count_nonzero(written) == FAT_PIXELS

    def test_save_side_images_before_analyze(self, phantom_image, tmp_path):
        analyzer = ThighAnalyzer(phantom_image, ScriptedDigitizer.from_dict(phantom_inputs()))
        with pytest.raises(RuntimeError):
            analyzer.save_side_images(str(tmp_path / 'phantom'))


class TestImageLoader:

    def test_dicom(self, phantom, tmp_path):
        path = write_dicom(tmp_path / 'thigh.dcm', phantom)
        loader = ImageLoader(path)
        assert loader.is_dicom
        assert loader.pixel_spacing == (0.5, 0.5)
        assert loader.mri_date.isoformat() == '2021-10-15'
        np.testing.assert_array_equal(loader.pixels, phantom)
        assert loader.get_metadata()['patient_id'] == 'PHANTOM'

    def test_multiframe_dicom_uses_first_frame(self, phantom, tmp_path):
        frames = np.stack([phantom, phantom // 2, np.zeros_like(phantom)])
        loader = ImageLoader(write_dicom(tmp_path / 'thigh.dcm', frames))
        assert loader.pixels.shape == phantom.shape
        np.testing.assert_array_equal(loader.pixels, phantom)

    def test_dicom_without_spacing(self, phantom, tmp_path):
        path = write_dicom(tmp_path / 'thigh.dcm', phantom, pixel_spacing=None, series_date=None)
        loader = ImageLoader(path)
        assert loader.pixel_spacing is None
        assert loader.mri_date is None
        assert loader.to_image().pixel_area_cm2 is None

    def test_raster_image(self, phantom, tmp_path):
        path = tmp_path / 'thigh.png'
        io.imsave(path, phantom.astype(np.uint8), check_contrast=False)
        loader = ImageLoader(path)
        assert not loader.is_dicom
        assert loader.pixel_spacing is None
        np.testing.assert_array_equal(loader.pixels, phantom)

    def test_require_dicom(self, phantom, tmp_path):
        path = tmp_path / 'thigh.png'
        io.imsave(path, phantom.astype(np.uint8), check_contrast=False)
        with pytest.raises(ValueError):
            ImageLoader(path, require_dicom=True)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ImageLoader(tmp_path / 'missing.dcm')

    def test_analyze_thigh_image(self, phantom, tmp_path, inputs_file):
        path = write_dicom(tmp_path / 'thigh.dcm', phantom)
        result = analyze_thigh_image(str(path), ScriptedDigitizer.from_json(inputs_file))
        assert result.name == 'thigh'
        assert result.report.right.flexor == pytest.approx(FLEXOR_PIXELS * PIXEL_AREA)

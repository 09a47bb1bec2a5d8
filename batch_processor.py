"""
Batch Processing Utility for Thigh CSA Analysis
===============================================
Process multiple thigh images, export results to CSV/Excel and append
reliability-study rows to the study spreadsheet.

Each case pairs an image with a digitizer input file (seeds, polygons and
approvals recorded as JSON). In the reliability study the images live in a
`<subject>/Visit<n>/` directory structure which identifies subject and visit.

Author: Thigh Muscle CSA Project
License: BSD 3-Clause
"""

import argparse
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
from openpyxl import Workbook, load_workbook
from tqdm import tqdm

from digitizer import MatplotlibDigitizer, ScriptedDigitizer
from thigh_analyzer import (
    STUDY_AREA_COLUMNS,
    UNITS_CM2,
    AnalysisConfig,
    AreaReport,
    ImageLoader,
    OutputPolicy,
    ThighAnalyzer,
    UnitPolicy,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STUDY_ID_COLUMNS = ['Subj ID', 'Subj #', 'Visit', 'MRI Date', 'Analysis Date']
STUDY_HEADERS = STUDY_ID_COLUMNS + [column for column, _, _ in STUDY_AREA_COLUMNS]
STUDY_DATE_FORMAT = '%d-%b-%Y'

_STUDY_PATH_PATTERN = re.compile(
    r'(?P<subject>(?P<number>\d{2})[^/\\]{3})[/\\]visit(?P<visit>\d)',
    re.IGNORECASE
)


@dataclass(frozen=True)
class StudyVisit:
    """Subject and visit identified from a study image path."""
    subject_id: str
    subject_number: int
    visit: int

    @property
    def label(self) -> str:
        return f"Subject {self.subject_id[:2]} - Visit {self.visit}"

    @property
    def report_stem(self) -> str:
        return f"mthreshr_{self.subject_id[:2]}_v{self.visit}"


def parse_study_path(path: Union[str, Path]) -> StudyVisit:
    """Read subject and visit from a `.../<NNxxx>/Visit<n>/...` path.

    Raises:
        ValueError: If the path does not follow the study layout
    """
    match = _STUDY_PATH_PATTERN.search(str(path))
    if match is None:
        raise ValueError(f"Path does not contain a <subject>/Visit<n> directory: {path}")
    return StudyVisit(
        subject_id=match.group('subject'),
        subject_number=int(match.group('number')),
        visit=int(match.group('visit')),
    )


class StudyLog:
    """Reliability-study spreadsheet, one row appended per analysis.

    The sheet carries a header row and a units row. Both are written when
    the file, the sheet or the header rows are missing.

    Running the same image twice appends a duplicate row; the sheet should
    be checked for duplicates before statistical analysis.
    """

    def __init__(self,
                 path: Union[str, Path],
                 sheet_name: str = 'ReliabilityStudy'):
        self.path = Path(path)
        self.sheet_name = sheet_name
        self._lock = threading.Lock()

    def _write_headers(self, ws) -> None:
        units = [''] * len(STUDY_ID_COLUMNS) + [f"({UNITS_CM2})"] * len(STUDY_AREA_COLUMNS)
        for col, (header, unit) in enumerate(zip(STUDY_HEADERS, units), start=1):
            ws.cell(row=1, column=col, value=header)
            ws.cell(row=2, column=col, value=unit or None)

    def _open(self):
        if self.path.exists():
            wb = load_workbook(self.path)
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            wb = Workbook()
            wb.remove(wb.active)

        if self.sheet_name in wb.sheetnames:
            ws = wb[self.sheet_name]
        else:
            ws = wb.create_sheet(self.sheet_name)

        first_area_col = len(STUDY_ID_COLUMNS) + 1
        if ws.cell(row=1, column=1).value is None or \
                ws.cell(row=2, column=first_area_col).value is None:
            self._write_headers(ws)
        return wb, ws

    def append(self,
               visit: StudyVisit,
               report: AreaReport,
               mri_date: Optional[date] = None,
               analysis_date: Optional[date] = None) -> None:
        """Append one analysis row.

        Raises:
            ValueError: If the report areas are not in cm²
        """
        if report.units != UNITS_CM2:
            raise ValueError(f"Study log requires areas in {UNITS_CM2}, got {report.units}")

        analysis_date = analysis_date or date.today()
        areas = report.to_dict()
        row = [
            visit.subject_id,
            visit.subject_number,
            visit.visit,
            mri_date.strftime(STUDY_DATE_FORMAT) if mri_date else '',
            analysis_date.strftime(STUDY_DATE_FORMAT),
        ] + [areas[column] for column, _, _ in STUDY_AREA_COLUMNS]

        with self._lock:
            wb, ws = self._open()
            ws.append(row)
            wb.save(self.path)
        logger.info(f"Appended {visit.label} to {self.path}")

    def read(self) -> pd.DataFrame:
        """Load the logged rows (units row skipped)."""
        return pd.read_excel(self.path, sheet_name=self.sheet_name,
                             skiprows=[1], engine='openpyxl')


class StudyCase:
    """Container for one image to analyze."""

    def __init__(self,
                 image_path: str,
                 inputs_path: str,
                 **additional_fields):
        """Initialize case data.

        Args:
            image_path: Path to the image file
            inputs_path: Path to the digitizer inputs JSON
            **additional_fields: Any additional metadata to include
        """
        self.image_path = image_path
        self.inputs_path = inputs_path
        self.additional_fields = additional_fields

    @property
    def name(self) -> str:
        return Path(self.image_path).stem


class BatchProcessor:
    """Process multiple thigh images for cross-sectional area analysis.

    Example usage:
        processor = BatchProcessor(AnalysisConfig.for_reliability_study(),
                                   study_log_path="MuscleCSA/mthreshr.xlsx")
        cases = processor.load_case_list("cases.csv")
        results = processor.process_all(cases)
        processor.export_results(results, "output_results.csv")
    """

    def __init__(self,
                 config: Optional[AnalysisConfig] = None,
                 study_log_path: Optional[str] = None,
                 save_visualizations: bool = False,
                 output_dir: Optional[str] = None,
                 save_side_images: bool = False):
        """Initialize the batch processor.

        Args:
            config: Analysis configuration (defaults if None)
            study_log_path: Study spreadsheet, required for APPEND_TO_STUDY_LOG
            save_visualizations: Whether to save PDF figure reports
            output_dir: Directory for saving figure reports and side images
            save_side_images: Whether to write left/right 16-bit TIF images
        """
        self.config = config or AnalysisConfig()
        self.save_visualizations = save_visualizations
        self.save_side_images = save_side_images
        self.output_dir = Path(output_dir) if output_dir else Path("./output")

        self.study_log: Optional[StudyLog] = None
        if self.config.output_policy is OutputPolicy.APPEND_TO_STUDY_LOG:
            if study_log_path is None:
                raise ValueError("study_log_path is required when appending to the study log")
            self.study_log = StudyLog(study_log_path)

        if self.save_visualizations or self.save_side_images:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    @property
    def study_mode(self) -> bool:
        return self.study_log is not None

    def load_case_list(self,
                       csv_path: str,
                       image_column: str = 'image_path',
                       inputs_column: str = 'inputs_path') -> List[StudyCase]:
        """Load the case list from a CSV file.

        Args:
            csv_path: Path to CSV file with one row per image
            image_column: Column name for the image path
            inputs_column: Column name for the digitizer inputs JSON path

        Returns:
            List of StudyCase objects
        """
        df = pd.read_csv(csv_path)

        required_columns = [image_column, inputs_column]
        missing = [col for col in required_columns if col not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        cases = []
        for _, row in df.iterrows():
            additional = {
                k: v for k, v in row.items()
                if k not in required_columns
            }
            cases.append(StudyCase(
                image_path=str(row[image_column]),
                inputs_path=str(row[inputs_column]),
                **additional
            ))

        logger.info(f"Loaded {len(cases)} cases from {csv_path}")
        return cases

    def process_single(self, case: StudyCase) -> Dict:
        """Analyze a single image.

        Args:
            case: StudyCase with the image and digitizer inputs

        Returns:
            Dictionary with case name, status and areas
        """
        result = {
            'name': case.name,
            'status': 'success',
            'error': None
        }

        try:
            visit = parse_study_path(case.image_path) if self.study_mode else None
            loader = ImageLoader(case.image_path, require_dicom=self.study_mode)
            digitizer = ScriptedDigitizer.from_json(case.inputs_path)

            analyzer = ThighAnalyzer(
                loader.to_image(), digitizer, self.config,
                name=visit.label if visit else case.name
            )
            analysis = analyzer.analyze()

            result.update(analysis.report.to_dict())
            result['units'] = analysis.report.units
            for side, side_result in analysis.sides.items():
                result[f'{side.name[0]} polygon attempts'] = side_result.polygon_attempts
            result.update(case.additional_fields)

            stem = visit.report_stem if visit else f"{case.name}_csa"
            if self.save_visualizations:
                report_path = self.output_dir / f"{stem}.pdf"
                analyzer.save_visualization(str(report_path))
                result['visualization_path'] = str(report_path)
            if self.save_side_images:
                analyzer.save_side_images(str(self.output_dir / stem))

            # Must stay the last side effect of a case
            if self.study_log is not None:
                self.study_log.append(visit, analysis.report, mri_date=loader.mri_date)

            logger.info(f"Successfully processed {case.name}")

        except Exception as e:
            result['status'] = 'error'
            result['error'] = str(e)
            logger.error(f"Error processing {case.name}: {e}")

        return result

    def process_all(self,
                    cases: List[StudyCase],
                    parallel: bool = False,
                    max_workers: int = 4,
                    show_progress: bool = True) -> pd.DataFrame:
        """Process all cases in the list.

        Every case runs on its own loader, digitizer and analyzer; nothing
        mutable is shared between runs except the locked study log.

        Args:
            cases: List of StudyCase objects
            parallel: Whether to use parallel processing
            max_workers: Number of parallel workers
            show_progress: Whether to show progress bar

        Returns:
            DataFrame with all analysis results
        """
        results = []

        if parallel:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(self.process_single, c): c
                    for c in cases
                }

                iterator = as_completed(futures)
                if show_progress:
                    iterator = tqdm(iterator, total=len(cases),
                                    desc="Processing images")

                for future in iterator:
                    results.append(future.result())
        else:
            iterator = cases
            if show_progress:
                iterator = tqdm(cases, desc="Processing images")

            for case in iterator:
                results.append(self.process_single(case))

        df = pd.DataFrame(results)

        # Reorder columns
        priority_cols = ['name', 'status', 'units'] + [c for c, _, _ in STUDY_AREA_COLUMNS]
        existing_priority = [c for c in priority_cols if c in df.columns]
        other_cols = [c for c in df.columns if c not in priority_cols]
        df = df[existing_priority + other_cols]

        success_count = (df['status'] == 'success').sum()
        error_count = (df['status'] == 'error').sum()
        logger.info(f"Batch processing complete: {success_count} successful, "
                    f"{error_count} errors")

        return df

    def export_results(self,
                       df: pd.DataFrame,
                       output_path: str,
                       format: str = 'csv') -> None:
        """Export results to file.

        Args:
            df: DataFrame with analysis results
            output_path: Path to save the results
            format: Output format ('csv' or 'excel')
        """
        if format == 'csv':
            df.to_csv(output_path, index=False)
        elif format == 'excel':
            df.to_excel(output_path, index=False, engine='openpyxl')
        else:
            raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Results exported to {output_path}")

    def generate_summary_report(self, df: pd.DataFrame) -> Dict:
        """Generate summary statistics from batch results.

        Args:
            df: DataFrame with analysis results

        Returns:
            Dictionary with summary statistics
        """
        successful = df[df['status'] == 'success']

        summary = {
            'total_images': len(df),
            'successful': len(successful),
            'errors': len(df) - len(successful),
            'statistics': {}
        }

        for col, _, _ in STUDY_AREA_COLUMNS:
            if col in successful.columns:
                summary['statistics'][col] = {
                    'mean': successful[col].mean(),
                    'std': successful[col].std(),
                    'min': successful[col].min(),
                    'max': successful[col].max(),
                    'median': successful[col].median()
                }

        return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Thigh muscle, subcutaneous fat and noncontractile element CSA"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--image', help="Single image file (DICOM or raster)")
    source.add_argument('--cases', help="CSV with image_path and inputs_path columns")
    parser.add_argument('--inputs',
                        help="Digitizer inputs JSON for --image (interactive if omitted)")
    parser.add_argument('--study-log',
                        help="Append rows to this study spreadsheet (strict units)")
    parser.add_argument('--strict', action='store_true',
                        help="Fail when pixel spacing is missing")
    parser.add_argument('--output', default='thigh_csa_results.csv',
                        help="Batch results file")
    parser.add_argument('--format', choices=['csv', 'excel'], default='csv')
    parser.add_argument('--report-dir', help="Save PDF figure reports here")
    parser.add_argument('--tif', action='store_true',
                        help="Also write left/right thigh TIF images to --report-dir")
    parser.add_argument('--parallel', action='store_true')
    parser.add_argument('--max-attempts', type=int, default=None,
                        help="Abort after this many rejected polygons per side")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.study_log:
        config = AnalysisConfig.for_reliability_study(max_polygon_attempts=args.max_attempts)
    else:
        config = AnalysisConfig(
            unit_policy=UnitPolicy.STRICT if args.strict else UnitPolicy.LENIENT,
            max_polygon_attempts=args.max_attempts,
        )

    if args.cases:
        processor = BatchProcessor(config, study_log_path=args.study_log,
                                   save_visualizations=bool(args.report_dir),
                                   output_dir=args.report_dir,
                                   save_side_images=args.tif and bool(args.report_dir))
        df = processor.process_all(processor.load_case_list(args.cases),
                                   parallel=args.parallel)
        processor.export_results(df, args.output, args.format)
        return 0 if (df['status'] == 'success').all() else 1

    if args.inputs:
        digitizer = ScriptedDigitizer.from_json(args.inputs)
    else:
        digitizer = MatplotlibDigitizer(Path(args.image).stem)

    loader = ImageLoader(args.image, require_dicom=bool(args.study_log))
    visit = parse_study_path(args.image) if args.study_log else None
    analyzer = ThighAnalyzer(loader.to_image(), digitizer, config,
                             name=visit.label if visit else Path(args.image).stem)
    analysis = analyzer.analyze()

    print(analysis.report.format_text(analyzer.name))
    if args.report_dir:
        report_dir = Path(args.report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        stem = visit.report_stem if visit else f"{Path(args.image).stem}_csa"
        analyzer.save_visualization(str(report_dir / f"{stem}.pdf"))
        if args.tif:
            analyzer.save_side_images(str(report_dir / stem))
    if visit is not None:
        StudyLog(args.study_log).append(visit, analysis.report, mri_date=loader.mri_date)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

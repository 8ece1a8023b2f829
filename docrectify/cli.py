"""Command-line interface for document photo rectification."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from dotenv import load_dotenv

from docrectify import __version__
from docrectify.inference.gateway import OnnxHeatmapGateway, OnnxModel, OnnxPointGateway
from docrectify.pipeline import PipelineConfig, RectificationPipeline, RectificationResult
from docrectify.session import Failed, ProcessingSession

# Load environment variables from .env
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)

logger = logging.getLogger(__name__)

IMAGE_PATTERNS = ['*.jpg', '*.JPG', '*.jpeg', '*.JPEG', '*.png', '*.PNG',
                  '*.heic', '*.HEIC', '*.webp', '*.WEBP', '*.tif', '*.tiff']


def build_pipeline(config: PipelineConfig) -> RectificationPipeline:
    """Wire the ONNX models named by ``config`` into a pipeline."""
    heatmap_gateway = OnnxHeatmapGateway(OnnxModel(config.heatmap_model_path))

    point_gateway = None
    if config.use_point_model_fallback:
        point_gateway = OnnxPointGateway(OnnxModel(config.point_model_path))

    return RectificationPipeline(heatmap_gateway, point_gateway, config)


def parse_corners(value: Optional[str]) -> Optional[List[Tuple[float, float]]]:
    """Parse "x1,y1,x2,y2,x3,y3,x4,y4" into four (x, y) points."""
    if not value:
        return None

    try:
        numbers = [float(v) for v in value.split(',')]
    except ValueError:
        raise click.BadParameter(f"Corners must be numbers: {value!r}", param_hint='--corners')
    if len(numbers) != 8:
        raise click.BadParameter(
            f"Expected 8 comma-separated values, got {len(numbers)}", param_hint='--corners'
        )

    return [(numbers[i], numbers[i + 1]) for i in range(0, 8, 2)]


def collect_inputs(input_paths: Tuple[str, ...], filter_pattern: Optional[str]) -> List[Path]:
    """Expand files and directories into a sorted list of photo paths."""
    input_files: List[Path] = []

    for input_path_str in input_paths:
        input_path = Path(input_path_str)

        if input_path.is_file():
            input_files.append(input_path)
        elif input_path.is_dir():
            patterns = [filter_pattern] if filter_pattern else IMAGE_PATTERNS
            found = set()
            for pattern in patterns:
                found.update(input_path.glob(pattern))
            input_files.extend(sorted(found))
            logger.info(f"Found {len(found)} file(s) in {input_path}")

    return input_files


async def _process_all(
    session: ProcessingSession,
    input_files: List[Path],
    corners: Optional[List[Tuple[float, float]]],
) -> list:
    tasks = [session.submit_photo(path, corners=corners) for path in input_files]
    results = []
    for task in tasks:
        results.append(await session.wait(task.photo_id))
    await session.close()
    return results


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """docrectify - Detect document pages in photos and flatten them."""
    pass


@main.command()
@click.argument('input_paths', nargs=-1, required=True, type=click.Path(exists=True))
@click.option(
    '--output',
    '-o',
    'output_dir',
    type=click.Path(),
    default=None,
    help='Output directory for rectified images'
)
@click.option(
    '--models',
    'models_dir',
    type=click.Path(),
    default=None,
    help='Directory holding model_heat.onnx and model_point.onnx'
)
@click.option(
    '--debug',
    is_flag=True,
    help='Save heatmap, corner overlay and rectified debug images'
)
@click.option(
    '--concurrency',
    type=click.IntRange(min=1),
    default=None,
    help='Number of photos processed at once'
)
@click.option(
    '--filter',
    'filter_pattern',
    type=str,
    help='Glob pattern for directories (e.g., "*.HEIC")'
)
@click.option(
    '--corners',
    type=str,
    help='Manual corners "x1,y1,...,x4,y4" in pixels, skips detection'
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging'
)
def process(
    input_paths: tuple,
    output_dir: Optional[str],
    models_dir: Optional[str],
    debug: bool,
    concurrency: Optional[int],
    filter_pattern: Optional[str],
    corners: Optional[str],
    verbose: bool
) -> None:
    """Rectify document photos.

    INPUT_PATHS: One or more image files or directories to process
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    manual_corners = parse_corners(corners)

    input_files = collect_inputs(input_paths, filter_pattern)
    if not input_files:
        logger.error("No input files found")
        sys.exit(1)
    if manual_corners is not None and len(input_files) > 1:
        logger.error("--corners applies to a single photo only")
        sys.exit(1)

    config = PipelineConfig.from_env(
        output_dir=output_dir,
        models_dir=models_dir,
        max_concurrency=concurrency,
        debug_dir='./debug' if debug else None,
    )

    Path(config.output_dir).mkdir(parents=True, exist_ok=True)
    if config.debug_dir:
        logger.info(f"Debug output will be saved to: {config.debug_dir}")

    pipeline = build_pipeline(config)
    if not pipeline.is_model_ready():
        logger.warning(
            f"Heatmap model not available at {config.heatmap_model_path}, "
            f"photos will be returned unrectified"
        )

    logger.info(f"Processing {len(input_files)} file(s)")

    session = ProcessingSession(pipeline, max_concurrency=config.max_concurrency)
    results = asyncio.run(_process_all(session, input_files, manual_corners))

    rectified = fallback = failed = 0
    for input_file, result in zip(input_files, results):
        if isinstance(result, RectificationResult) and not result.fallback:
            rectified += 1
            click.echo(
                f"{input_file.name}: rectified {result.width}x{result.height} "
                f"(method={result.method}, confidence={result.confidence:.2f}) -> {result.image_uri}"
            )
        elif isinstance(result, RectificationResult):
            fallback += 1
            click.echo(f"{input_file.name}: kept original ({result.fallback_reason})")
        else:
            failed += 1
            error = result.error if isinstance(result, Failed) else "no result"
            click.echo(click.style(f"{input_file.name}: failed ({error})", fg="red"))

    logger.info(f"{'=' * 60}")
    logger.info(
        f"COMPLETE: {rectified} rectified, {fallback} unrectified, "
        f"{failed} failed of {len(input_files)} file(s)"
    )
    logger.info(f"Output directory: {Path(config.output_dir).absolute()}")
    logger.info(f"{'=' * 60}")

    if failed:
        sys.exit(1)


@main.command()
@click.option(
    '--models',
    'models_dir',
    type=click.Path(),
    default=None,
    help='Directory holding model_heat.onnx and model_point.onnx'
)
def status(models_dir: Optional[str]) -> None:
    """Check whether the detection models load."""
    config = PipelineConfig.from_env(models_dir=models_dir)

    checks = [
        ("Heatmap model", config.heatmap_model_path, True),
        ("Point model", config.point_model_path, False),
    ]

    all_required_ready = True
    for name, path, required in checks:
        ready = OnnxModel(path).is_ready()
        if ready:
            status_text = click.style("READY", fg="green", bold=True)
        elif required:
            status_text = click.style("NOT AVAILABLE", fg="red", bold=True)
            all_required_ready = False
        else:
            status_text = click.style("NOT AVAILABLE (optional)", fg="yellow")
        click.echo(f"{name}: {status_text}")
        click.echo(f"   Path: {path}")

    if not all_required_ready:
        click.echo("\nPhotos will be returned unrectified until the heatmap model is installed.")
        sys.exit(1)


if __name__ == '__main__':
    main()

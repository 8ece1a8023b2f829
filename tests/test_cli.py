"""Tests for configuration loading and the command-line interface."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from docrectify.cli import main, parse_corners
from docrectify.pipeline import PipelineConfig

from synthetic_images import encode_png, make_page_photo


class TestPipelineConfig:
    """Test environment overlay of the configuration."""

    def test_defaults(self) -> None:
        config = PipelineConfig.from_env(environ={})
        assert config == PipelineConfig()
        assert config.heatmap_peak_threshold == 0.3
        assert config.objectness_threshold == 0.4
        assert config.model_input_size == 256

    def test_environment_values(self) -> None:
        config = PipelineConfig.from_env(environ={
            "DOCRECTIFY_MAX_CONCURRENCY": "4",
            "DOCRECTIFY_HEATMAP_PEAK_THRESHOLD": "0.5",
            "DOCRECTIFY_USE_POINT_MODEL_FALLBACK": "false",
            "DOCRECTIFY_OUTPUT_FORMAT": "png",
            "UNRELATED": "x",
        })
        assert config.max_concurrency == 4
        assert config.heatmap_peak_threshold == 0.5
        assert config.use_point_model_fallback is False
        assert config.output_format == "png"

    def test_overrides_win(self) -> None:
        config = PipelineConfig.from_env(
            environ={"DOCRECTIFY_MODELS_DIR": "/env/models"},
            models_dir="/cli/models",
            output_dir=None,
        )
        assert config.models_dir == "/cli/models"
        assert config.output_dir == PipelineConfig().output_dir
        assert config.heatmap_model_path == Path("/cli/models/model_heat.onnx")

    def test_invalid_number(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig.from_env(environ={"DOCRECTIFY_MAX_CONCURRENCY": "many"})


class TestParseCorners:
    """Test the --corners option parser."""

    def test_parse(self) -> None:
        assert parse_corners("1,2,3,4,5,6,7,8") == [(1, 2), (3, 4), (5, 6), (7, 8)]

    def test_empty(self) -> None:
        assert parse_corners(None) is None


class TestCli:
    """Test the click commands without model files."""

    def test_status_without_models(self, tmp_path) -> None:
        result = CliRunner().invoke(main, ["status", "--models", str(tmp_path)])

        assert result.exit_code == 1
        assert "Heatmap model: NOT AVAILABLE" in result.output

    def test_process_without_models_keeps_original(self, tmp_path) -> None:
        image, _ = make_page_photo(width=400, height=300, page_size=(150, 100))
        photo = tmp_path / "page.png"
        photo.write_bytes(encode_png(image))
        output = tmp_path / "out"

        result = CliRunner().invoke(main, [
            "process", str(photo),
            "--output", str(output),
            "--models", str(tmp_path / "models"),
        ])

        assert result.exit_code == 0, result.output
        assert "page.png: kept original (model not ready)" in result.output
        assert list(output.iterdir()) == []

    def test_process_manual_corners(self, tmp_path) -> None:
        image, corners = make_page_photo(width=400, height=300, page_size=(150, 100))
        photo = tmp_path / "page.png"
        photo.write_bytes(encode_png(image))
        output = tmp_path / "out"

        result = CliRunner().invoke(main, [
            "process", str(photo),
            "--output", str(output),
            "--models", str(tmp_path / "models"),
            "--corners", ",".join(f"{v:.2f}" for v in corners.reshape(-1)),
        ])

        # Manual corners rectify without any model
        assert result.exit_code == 0, result.output
        assert "page.png: rectified 150x100 (method=manual" in result.output
        assert len(list(output.iterdir())) == 1

    def test_bad_corners(self, tmp_path) -> None:
        photo = tmp_path / "page.png"
        photo.write_bytes(encode_png(make_page_photo(width=100, height=80)[0]))

        result = CliRunner().invoke(main, ["process", str(photo), "--corners", "1,2,3"])
        assert result.exit_code == 2
        assert "Expected 8" in result.output

    def test_undecodable_photo_fails(self, tmp_path) -> None:
        photo = tmp_path / "broken.jpg"
        photo.write_bytes(b"not an image")

        result = CliRunner().invoke(main, [
            "process", str(photo),
            "--output", str(tmp_path / "out"),
            "--models", str(tmp_path / "models"),
            "--corners", "10,10,90,10,90,60,10,60",
        ])

        assert result.exit_code == 1
        assert "broken.jpg: failed (DecodeError" in result.output

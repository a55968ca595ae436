from pathlib import Path

import pytest

from nobg.app import apply_overrides, parse_args
from nobg.utils.config import PipelineConfig, get, load_yaml
from nobg.utils.types import artifact_filename

DEFAULT_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"


def test_dot_access_helper():
    cfg = {"pipeline": {"threshold": 0.7}}
    assert get(cfg, "pipeline.threshold") == 0.7
    assert get(cfg, "pipeline.missing", 1) == 1
    assert get(cfg, "pipeline.threshold.deeper", "x") == "x"


def test_default_config_matches_documented_defaults():
    cfg = load_yaml(DEFAULT_CONFIG)
    pc = PipelineConfig.from_dict(cfg)
    assert pc.threshold == 0.6
    assert pc.fps == 30.0
    assert pc.max_input_mb == 500.0
    assert pc.segmentation_timeout_s is None


def test_missing_config_file_raises():
    with pytest.raises(FileNotFoundError):
        load_yaml("/tmp/nobg_no_such_config.yaml")


def test_pipeline_config_rejects_bad_values():
    with pytest.raises(ValueError):
        PipelineConfig(threshold=1.5)
    with pytest.raises(ValueError):
        PipelineConfig(fps=0)


def test_cli_overrides_land_in_config():
    args = parse_args(["--input", "clip.mp4", "--threshold", "0.55", "--fps", "24", "--backend", "png", "--offline"])
    cfg = apply_overrides({}, args)
    pc = PipelineConfig.from_dict(cfg)
    assert pc.threshold == 0.55
    assert pc.fps == 24.0
    assert get(cfg, "recorder.backend") == "png"
    assert get(cfg, "input.realtime") is False


def test_artifact_filename():
    assert artifact_filename("holiday.clip.mp4", "webm") == "holiday.clip_nobg.webm"
    assert artifact_filename("talk.mov", "matroska") == "talk_nobg.mkv"

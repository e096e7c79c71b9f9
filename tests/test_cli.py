import json

import pytest

from wgpu_bench import cli
from wgpu_bench.driver import SuiteResult
from wgpu_bench.errors import UnsupportedDevice
from wgpu_bench.suites import SUITES


def test_parser_defaults():
    args = cli.build_parser().parse_args([])
    assert args.log_level == "INFO"
    assert args.suite == []
    assert args.trials is None
    assert not args.save_svg


def test_log_level_is_case_insensitive():
    args = cli.build_parser().parse_args(["--log-level", "debug"])
    assert args.log_level == "DEBUG"


def test_make_config_applies_flags(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"trials": 7, "saveCsv": True, "seed": 1}))
    args = cli.build_parser().parse_args([
        "--config", str(path), "--trials", "3", "--no-validate", "--init", "zeros",
        "--save-svg", "--disable-pipeline-cache", "--output-dir", "out", "--no-progress",
    ])
    config = cli.make_config(args)
    assert config.trials == 3
    assert not config.validate
    assert config.initialize_host == "zeros"
    assert config.save_csv and config.save_svg and not config.save_json
    assert not config.enable_pipeline_cache
    assert config.output_dir == "out"
    assert config.seed == 1
    assert not config.progress


def test_select_suites():
    assert list(cli.select_suites([])) == list(SUITES)
    assert list(cli.select_suites(["all"])) == list(SUITES)
    assert list(cli.select_suites(["madd", "membw-gsl"])) == ["madd", "membw-gsl"]
    with pytest.raises(ValueError, match="nope"):
        cli.select_suites(["madd", "nope"])


def test_list(capsys):
    assert cli.main(["--list"]) == 0
    out = capsys.readouterr().out
    for name in SUITES:
        assert name in out


def test_unknown_suite_is_usage_error():
    with pytest.raises(SystemExit) as e:
        cli.main(["--suite", "nope"])
    assert e.value.code == 2


def test_unsupported_device_exit_code(monkeypatch):
    def no_device(*args, **kwargs):
        raise UnsupportedDevice("no adapter")

    monkeypatch.setattr(cli, "Driver", no_device)
    assert cli.main(["--suite", "madd"]) == cli.EXIT_UNSUPPORTED_DEVICE


class _StubDriver:
    def __init__(self, config, sink=None):
        self.config = config
        self.sink = sink

    def cancel(self):
        pass

    def run(self, suites):
        results = []
        for name in suites:
            result = SuiteResult(name=name, category="test")
            result.validations.done = 1
            result.validations.errors = int(name == "madd")
            results.append(result)
        return results


def test_validation_errors_exit_code(monkeypatch):
    monkeypatch.setattr(cli, "Driver", _StubDriver)
    assert cli.main(["--suite", "membw-gsl"]) == 0
    assert cli.main(["--suite", "madd"]) == cli.EXIT_VALIDATION_FAILED

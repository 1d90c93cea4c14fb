"""Command-line runner"""

import pytest

from gpuprim import main as cli
from gpuprim.gpu_errors import DeviceError


@pytest.fixture
def opened(monkeypatch, ctx):
    requested = []

    def session_open(platform_index=0, device_index=0, config=None):
        requested.append((platform_index, device_index))
        return ctx

    monkeypatch.setattr(cli, "session_open", session_open)
    return requested


def test_flag_without_value_keeps_default():
    args, unknown = cli.parser_create().parse_known_args(["-p", "-d", "1", "--frobnicate"])
    assert args.platform is None
    assert args.device == 1
    assert unknown == ["--frobnicate"]


def test_help_exits_cleanly(capsys):
    with pytest.raises(SystemExit) as info:
        cli.main(["-h"])
    assert info.value.code == 0
    assert "-a" in capsys.readouterr().out


def test_add_prints_inputs_and_output(opened, capsys):
    assert cli.main(["-a", "add", "-n", "10", "-g", "10", "--unknown-flag"]) == 0

    out = capsys.readouterr().out
    assert "Running on Fake, Fake GPU" in out
    assert "A = [0, 1, 2, 3, 4, 5, 6, 7, 8, 9]" in out
    assert "B = [11, 12, 13, 14, 15, 16, 17, 18, 19, 20]" in out
    assert "C = [11, 13, 15, 17, 19, 21, 23, 25, 27, 29]" in out
    assert "Kernel Execution Time [ns] (add): 1000" in out
    assert "Started 2 Ended [us]: 1" in out
    assert "Validation passed" in out
    assert opened == [(0, 0)]


@pytest.mark.parametrize(
    "argv, result_line",
    [
        (["-a", "reduce-sum"], "Result = 10"),
        (["-a", "reduce-max", "--values", "3,9,-4,7"], "Result = 9"),
        (["-a", "hist-auto", "--values", "2,5,5,9", "--bins", "4", "-g", "2"], "Result = (2, 9)"),
    ],
)
def test_reductions_report_result(opened, capsys, argv, result_line):
    assert cli.main(argv) == 0
    assert result_line in capsys.readouterr().out


@pytest.mark.parametrize("algorithm", ["hist-simple", "hist-complex", "scan", "scan-full", "mul"])
def test_algorithms_validate(opened, capsys, algorithm):
    assert cli.main(["-a", algorithm, "-n", "30", "-g", "8"]) == 0
    assert "Validation passed" in capsys.readouterr().out


def test_float_inputs(opened, capsys):
    assert cli.main(["-a", "reduce-min", "--dtype", "float32", "--values", "2.5,-1.25,4"]) == 0
    assert "Result = -1.25" in capsys.readouterr().out


def test_selected_indices_are_passed_on(opened):
    cli.main(["-p", "1", "-d", "2", "-a", "add"])
    assert opened == [(1, 2)]


def test_device_error_exits_with_failure(monkeypatch, capsys):
    monkeypatch.setattr(
        cli, "session_open", lambda p=0, d=0, config=None: DeviceError("No WebGPU adapters found")
    )
    assert cli.main([]) == 1
    assert "No WebGPU adapters found" in capsys.readouterr().err


def test_listing(monkeypatch, opened, capsys):
    monkeypatch.setattr(cli, "platforms_describe", lambda: "Found 1 platform(s)")
    cli.main(["-l"])
    assert capsys.readouterr().out.startswith("Found 1 platform(s)")


def test_missing_kernel_file(opened, tmp_path, capsys):
    assert cli.main(["-k", str(tmp_path / "absent.wgsl")]) == 1
    assert "cannot read kernel source" in capsys.readouterr().err


def test_broken_kernel_file_prints_build_log(opened, tmp_path, capsys):
    path = tmp_path / "broken.wgsl"
    path.write_text("@@ not wgsl\n", encoding="utf-8")

    assert cli.main(["-k", str(path)]) == 1

    out = capsys.readouterr().out
    assert "Build Status: error" in out
    assert "parsing error" in out


def test_invalid_geometry_is_reported(opened, capsys):
    assert cli.main(["-a", "add", "-g", "0"]) == 1
    assert "ERROR" in capsys.readouterr().err

import json

import pytest

from speedcheck_server import cli


def test_serve_flags_default_to_none():
    args = cli.build_parser().parse_args(["serve"])
    assert args.command == "serve"
    assert args.port is None
    assert args.max_download_mb is None


def test_run_defaults():
    args = cli.build_parser().parse_args(["run"])
    assert args.url == "http://127.0.0.1:3000"
    assert args.download_threads == 4
    assert args.download_min == 3.5
    assert args.download_max == 8.0
    assert args.stability_threshold == 0.05
    assert args.json is False


def test_command_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_run_rejects_invalid_config(capsys):
    args = cli.build_parser().parse_args(["run", "--download-threads", "0"])
    assert cli.cmd_run(args) == 1
    assert "download_threads" in capsys.readouterr().err


def test_serve_rejects_invalid_config(capsys):
    args = cli.build_parser().parse_args(["serve", "--max-upload-mb", "0"])
    assert cli.cmd_serve(args) == 1
    assert "MAX_UPLOAD_SIZE_MB" in capsys.readouterr().err


def test_info_against_live_server(live_server, capsys):
    args = cli.build_parser().parse_args(["info", "--url", live_server.base_url])
    assert cli.cmd_info(args) == 0
    out = capsys.readouterr().out
    assert "SpeedCheck Speed Test Server" in out
    assert "50 MB" in out


def test_info_unreachable(capsys):
    args = cli.build_parser().parse_args(["info", "--url", "http://127.0.0.1:9"])
    assert cli.cmd_info(args) == 1
    assert "Error" in capsys.readouterr().err


def test_run_json_report(live_server, capsys):
    args = cli.build_parser().parse_args([
        "run", "--url", live_server.base_url, "--json",
        "--download-threads", "2", "--upload-threads", "2",
        "--download-min", "0.3", "--download-max", "0.8",
        "--upload-min", "0.3", "--upload-max", "0.8",
        "--download-size", "5", "--upload-size", "1", "--pings", "3",
    ])
    assert cli.cmd_run(args) == 0
    out = capsys.readouterr().out
    report = json.loads(out[out.find("{\n"):])
    assert report["latency"]["samples"] == 3
    assert report["download"]["bytes_transferred"] > 0
    assert report["upload"]["bytes_transferred"] > 0

from __future__ import annotations


import pytest

from ocrserver import capabilities as caps
from ocrserver.cli import _parse_args, build_config, main
from ocrserver.config import ServerConfig
from ocrserver.exceptions import MissingExternalCapability


def test_init_creates_the_layout(tmp_path):
    assert main(["init", "--root", str(tmp_path / "a"), "--root", str(tmp_path / "b")]) == 0
    for name in ("a", "b"):
        for sub in ("Entrada", "Saida", "Erro", "Originais_Processados"):
            assert (tmp_path / name / sub).is_dir()


def test_run_arguments_map_onto_the_config(tmp_path):
    args = _parse_args([
        "run", "--root", str(tmp_path / "a"), "--root", str(tmp_path / "b"),
        "--max-files", "3", "--max-pgs", "4", "-l", "por", "spa", "--dpi", "200",
        "--oem", "1", "--psm", "6", "--poll-interval", "2", "--stability-interval", "1",
        "--claim-store", "network", "--error-log-path", str(tmp_path / "err.jsonl"),
        "--log-performance", "--progress", "--once", "--ocr-backend", "tesseract",
    ])
    config = build_config(args)

    assert [r.base for r in config.watch_roots] == [tmp_path / "a", tmp_path / "b"]
    assert (config.max_files, config.max_pgs, config.dpi) == (3, 4, 200)
    assert config.languages == ("por", "spa")
    assert (config.oem, config.psm) == (1, 6)
    assert (config.poll_interval, config.stability_interval) == (2.0, 1.0)
    assert config.claim_store == "network"
    assert config.error_log_path == tmp_path / "err.jsonl"
    assert config.log_performance and config.show_progress
    assert config.ocr_backend == caps.TESSERACT_BACKEND
    assert args.once


def test_run_defaults(tmp_path):
    config = build_config(_parse_args(["run", "--root", str(tmp_path)]))
    assert config == ServerConfig(watch_roots=[tmp_path])


def test_no_command_prints_usage(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2
    assert "ocr-server run" in capsys.readouterr().out


# --- startup checks ---
def _fake_tools(monkeypatch, tesseract="tesseract 4.1.1\n leptonica-1.79.0",
                langs="eng\npor\nosd", gs="9.55.0"):
    outputs = {
        ("--version", "tess"): tesseract,
        ("--list-langs", "tess"): f'List of available languages in "/usr/share/tessdata/" (3):\n{langs}',
        ("--version", "gs"): gs,
    }

    def run_capture(cmd, timeout=None):
        key = (cmd[1], "gs" if cmd[0].endswith("gs") else "tess")
        return 0, outputs[key]

    monkeypatch.setattr(caps, "run_capture", run_capture)
    monkeypatch.setattr(caps, "resolve_ghostscript_cmd", lambda: "/usr/bin/gs")
    monkeypatch.setattr("ocrserver.ocr_backends.tesseract_backend.resolve_tesseract_cmd",
                        lambda: "/usr/bin/tesseract")


def test_parse_version():
    assert caps.parse_version("tesseract 4.1.1") == (4, 1, 1)
    assert caps.parse_version("tesseract v5.3.0.20221214") == (5, 3, 0)
    assert caps.parse_version("9.50") == (9, 50)
    assert caps.parse_version("no digits") is None


def test_capabilities_pass(monkeypatch, tmp_path):
    _fake_tools(monkeypatch)
    found = caps.check_capabilities(ServerConfig(watch_roots=[tmp_path], languages=("por", "eng")))
    assert found["tesseract"] == "4.1.1"
    assert found["ghostscript"] == "9.55.0"
    assert "pymupdf" in found


@pytest.mark.parametrize("tools", [
    {"tesseract": "tesseract 3.05.02"},
    {"langs": "eng\nosd"},
    {"gs": "9.27"},
])
def test_capabilities_fail(monkeypatch, tmp_path, tools):
    _fake_tools(monkeypatch, **tools)
    with pytest.raises(MissingExternalCapability):
        caps.check_capabilities(ServerConfig(watch_roots=[tmp_path]))


def test_missing_tesseract(monkeypatch, tmp_path):
    _fake_tools(monkeypatch)
    monkeypatch.setattr("ocrserver.ocr_backends.tesseract_backend.resolve_tesseract_cmd", lambda: None)
    with pytest.raises(MissingExternalCapability, match="tesseract not found"):
        caps.check_capabilities(ServerConfig(watch_roots=[tmp_path]))


def test_custom_backend_must_import(monkeypatch, tmp_path):
    _fake_tools(monkeypatch)
    ok = ServerConfig(watch_roots=[tmp_path], ocr_backend="fakes.FakeEngine")
    assert caps.check_capabilities(ok)["ocr_backend"] == "fakes.FakeEngine"

    bad = ServerConfig(watch_roots=[tmp_path], ocr_backend="fakes.Nope")
    with pytest.raises(MissingExternalCapability):
        caps.check_capabilities(bad)


def test_run_refuses_to_start_without_externals(monkeypatch, tmp_path):
    def missing(config):
        raise MissingExternalCapability("gs not found")

    monkeypatch.setattr("ocrserver.server.check_capabilities", missing)
    monkeypatch.setattr("ocrserver.cli.configure_worker_logging", lambda *a, **kw: None)
    monkeypatch.setattr("ocrserver.server.OCRServer._install_signal_handlers", lambda self: None)
    with pytest.raises(SystemExit) as exc:
        main(["run", "--root", str(tmp_path), "--once"])
    assert exc.value.code == 3
    assert not (tmp_path / "Entrada").exists()

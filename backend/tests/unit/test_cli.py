"""
Command line entry points
"""
import httpx
import pytest

from ntpu_assistant import cli

pytestmark = pytest.mark.unit


def test_parser_defaults_to_serve():
    args = cli.build_parser().parse_args([])
    assert args.command is None
    warm = cli.build_parser().parse_args(["warmup", "--modules", "contact,course", "--reset"])
    assert (warm.modules, warm.reset) == ("contact,course", True)


@pytest.mark.parametrize("status, expected", [(200, 0), (503, 1)])
def test_healthcheck_status(monkeypatch, status, expected):
    def fake_get(url, timeout):
        return httpx.Response(status, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", fake_get)
    assert cli.healthcheck("http://127.0.0.1:10000/readyz") == expected


def test_healthcheck_connection_error(monkeypatch, capsys):
    def fake_get(url, timeout):
        raise httpx.ConnectError("refused", request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", fake_get)
    assert cli.healthcheck("http://127.0.0.1:1/readyz") == 1
    assert "unhealthy" in capsys.readouterr().err


def test_unknown_warmup_module(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("NTPU_DATA_DIR", str(tmp_path))
    cli.get_settings.cache_clear()
    try:
        assert cli.main(["warmup", "--modules", "weather"]) == 1
    finally:
        cli.get_settings.cache_clear()
    assert "weather" in capsys.readouterr().err

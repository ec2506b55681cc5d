import io

import pytest

import sharehub


@pytest.fixture
def no_server(monkeypatch):
    calls = []
    monkeypatch.setattr(sharehub.Flask, "run", lambda self, **kw: calls.append(kw))
    monkeypatch.setattr(sharehub, "outbound_ip", lambda: "192.0.2.10")
    monkeypatch.setattr(sharehub.sys, "stdin", io.StringIO(""))
    return calls


def test_parser_defaults():
    args, words = sharehub.parse_command_line(["greet", "world"])
    assert words == ["greet", "world"]
    assert args.host == "0.0.0.0"
    assert args.port == 8003
    assert args.upload_dir == "upload"
    assert args.max_mb == 32


@pytest.fixture
def served_targets(monkeypatch):
    targets = []
    real_create_app = sharehub.create_app

    def recording_create_app(target, **kwargs):
        targets.append(target)
        return real_create_app(target, **kwargs)

    monkeypatch.setattr(sharehub, "create_app", recording_create_app)
    return targets


@pytest.mark.parametrize(
    "argv, text",
    [
        (["-n", "5"], "-n 5"),
        (["-h"], "-h"),
        (["--verbose", "mode"], "--verbose mode"),
        (["greet", "-x", "world"], "greet -x world"),
        (["--port", "9000", "-5"], "-5"),
    ],
)
def test_unknown_dashed_words_are_served_as_text(no_server, served_targets, argv, text):
    sharehub.main(argv)
    assert served_targets == [sharehub.LiteralTarget(text)]
    assert len(no_server) == 1


def test_main_with_closed_stdin(no_server, served_targets, monkeypatch):
    monkeypatch.setattr(sharehub.sys, "stdin", None)
    sharehub.main(["hello", "there"])
    assert served_targets == [sharehub.LiteralTarget("hello there")]


def test_main_serves_string(no_server, capsys):
    sharehub.main(["--port", "9000", "greet", "world"])
    out = capsys.readouterr().out
    assert "Serving string" in out
    assert "Serving on 192.0.2.10:9000" in out
    assert no_server == [{"debug": False, "host": "0.0.0.0", "port": 9000}]


def test_main_upload_mode(no_server, tmp_path, capsys):
    dest = tmp_path / "incoming"
    sharehub.main(["--upload-dir", str(dest), "upload"])
    assert dest.is_dir()
    out = capsys.readouterr().out
    assert "Waiting for files" in out
    assert "/upload-text" in out


def test_main_exits_on_setup_error(no_server, tmp_path, monkeypatch):
    def fail(root):
        raise sharehub.SetupError("cannot archive")

    monkeypatch.setattr(sharehub, "build_archive", fail)
    with pytest.raises(SystemExit, match="Error: cannot archive"):
        sharehub.main([str(tmp_path)])
    assert no_server == []


def test_main_exits_when_outbound_ip_unknown(no_server, monkeypatch):
    def fail():
        raise sharehub.SetupError("cannot determine outbound IP")

    monkeypatch.setattr(sharehub, "outbound_ip", fail)
    with pytest.raises(SystemExit, match="outbound IP"):
        sharehub.main(["hello"])
    assert no_server == []


def test_outbound_ip_failure_is_setup_error(monkeypatch):
    class NoRoute:
        def __init__(self, *args):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def connect(self, addr):
            raise OSError("Network is unreachable")

    monkeypatch.setattr(sharehub.socket, "socket", NoRoute)
    with pytest.raises(sharehub.SetupError):
        sharehub.outbound_ip()

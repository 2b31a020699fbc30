import sys

import pytest

from toolpipe import cli
from toolpipe.model.parsing import config_from_yaml, config_to_yaml
from toolpipe.model.tools import CommandInvocation, CommandParameter, Config, MessageViewer, MinimalTool

TOOLS_YAML = """
macros:
- name: Passthrough
  prefix: [cat]
  inputMethod: stdin
- name: Reverse
  prefix: [rev]
  inputMethod: stdin
  enabled: false
commentators:
- name: Missing
  prefix: [toolpipe-no-such-binary]
  inputMethod: stdin
"""


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOLPIPE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("TOOLPIPE_CONFIG", raising=False)
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def tools_file(tmp_path):
    path = tmp_path / "tools.yaml"
    path.write_text(TOOLS_YAML, encoding="utf-8")
    return path


def test_check_reports_counts_and_warnings(tools_file, capsys):
    assert cli.main(["check", str(tools_file)]) == 0
    captured = capsys.readouterr()
    assert "macros: 2" in captured.out
    assert "commentators: 1" in captured.out
    assert "messageViewers: 0" in captured.out
    assert "toolpipe-no-such-binary" in captured.err


def test_check_rejects_invalid_yaml(tmp_path, capsys):
    path = tmp_path / "bad.yaml"
    path.write_text("macros:\n- name: NoCommand\n", encoding="utf-8")
    assert cli.main(["check", str(path)]) == 1
    assert "Missing value for prefix" in capsys.readouterr().err


def test_check_missing_file(tmp_path, capsys):
    assert cli.main(["check", str(tmp_path / "absent.yaml")]) == 1
    assert "Error" in capsys.readouterr().err


def test_import_then_export(tools_file, tmp_path, capsys):
    assert cli.main(["import", str(tools_file)]) == 0
    assert cli.main(["export"]) == 0
    exported = capsys.readouterr().out
    assert config_from_yaml(exported) == config_from_yaml(TOOLS_YAML)

    output = tmp_path / "out.yaml"
    assert cli.main(["export", "--output", str(output)]) == 0
    assert config_from_yaml(output.read_text(encoding="utf-8")) == config_from_yaml(TOOLS_YAML)


def test_export_without_stored_config_uses_defaults(capsys):
    assert cli.main(["export"]) == 0
    assert "Hexdump" in capsys.readouterr().out


def test_list_and_toggle(tools_file, capsys):
    cli.main(["import", str(tools_file)])
    capsys.readouterr()

    assert cli.main(["toggle", "macros", "1"]) == 0
    assert "Reverse: enabled" in capsys.readouterr().out

    assert cli.main(["toggle", "macros", "0", "off"]) == 0
    capsys.readouterr()

    assert cli.main(["list"]) == 0
    out = capsys.readouterr().out
    assert "macros[0] off Passthrough: cat" in out
    assert "macros[1] on  Reverse: rev" in out


def test_toggle_out_of_range(tools_file, capsys):
    cli.main(["import", str(tools_file)])
    assert cli.main(["toggle", "highlighters", "3"]) == 1
    assert "Error" in capsys.readouterr().err


def test_view_renders_message(tmp_path, capsys):
    upper = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read().upper())"
    viewer = MessageViewer(common=MinimalTool(
        name="Upper",
        enabled=False,
        cmd=CommandInvocation(prefix=(sys.executable, "-c", upper)),
    ))
    config_path = tmp_path / "viewer.yaml"
    config_path.write_text(config_to_yaml(Config(message_viewers=(viewer,))), encoding="utf-8")
    message_path = tmp_path / "response.http"
    message_path.write_bytes(b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n\r\nhello")

    cli.main(["import", str(config_path)])
    capsys.readouterr()
    assert cli.main(["view", "Upper", str(message_path), "--response"]) == 0
    assert capsys.readouterr().out == "HELLO"


def test_view_unknown_viewer(tmp_path, capsys):
    message_path = tmp_path / "request.http"
    message_path.write_bytes(b"GET / HTTP/1.1\r\n\r\n")
    assert cli.main(["view", "Nope", str(message_path)]) == 2
    assert "No message viewer named 'Nope'" in capsys.readouterr().err


def write_generator_config(tmp_path):
    script = "import sys\nfor i in range(int(sys.argv[1])): print(f'w{i}')"
    generator = MinimalTool(
        name="Words",
        cmd=CommandInvocation(
            prefix=(sys.executable, "-c", script, "${count}"),
            parameters=(CommandParameter(name="count", required=True),),
        ),
    )
    config_path = tmp_path / "generator.yaml"
    config_path.write_text(config_to_yaml(Config(intruder_payload_generators=(generator,))), encoding="utf-8")
    cli.main(["import", str(config_path)])


def test_payloads_with_parameter(tmp_path, capsysbinary):
    write_generator_config(tmp_path)
    capsysbinary.readouterr()
    assert cli.main(["payloads", "Words", "--param", "count=3"]) == 0
    assert capsysbinary.readouterr().out == b"w0\nw1\nw2\n"


def test_payloads_missing_parameter(tmp_path, capsys):
    write_generator_config(tmp_path)
    capsys.readouterr()
    assert cli.main(["payloads", "Words"]) == 1
    assert "Missing required parameters: count" in capsys.readouterr().err
    assert cli.main(["payloads", "Words", "-p", "count"]) == 1
    assert "Expected NAME=VALUE" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 2
    assert "usage" in capsys.readouterr().out.lower()

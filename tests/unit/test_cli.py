"""Unit tests for CLI argument parsing, configuration loading and output helpers."""

import json

import pytest

from bdg.cli import main as cli_main
from bdg.cli.console_cmd import format_console
from bdg.cli.main import create_main_parser, create_parent_parser, load_configuration
from bdg.cli.network_cmd import format_list
from bdg.cli.output import emit, parse_json_arg, report_error
from bdg.cli.session_cmd import split_list, start_options
from bdg.config import Configuration
from bdg.exceptions import CommandError, IPCError
from bdg.exit_codes import ExitCode


@pytest.fixture
def parser():
    return create_main_parser(create_parent_parser())


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in Configuration.DEFAULTS:
        monkeypatch.delenv(f"BDG_{key.upper()}", raising=False)
    monkeypatch.setattr(cli_main, "DEFAULT_CONFIG_FILE", str(tmp_path / "missing-bdgrc"))
    return monkeypatch


@pytest.mark.unit
class TestParser:
    def test_subcommand_required(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_start_options(self, parser):
        args = parser.parse_args(
            ["start", "https://a.test", "--telemetry", "network, console", "--exclude", "*ads*", "--all-bodies"]
        )

        assert args.url == "https://a.test"
        assert args.telemetry == "network, console"
        assert args.all_bodies is True
        assert args.include_all is False
        assert args.func.__name__ == "start_handler"

    def test_global_options_after_subcommand(self, parser):
        args = parser.parse_args(["peek", "--last", "5", "--chrome-port", "9333", "--format", "text"])

        assert args.last == 5
        assert args.chrome_port == 9333
        assert args.format == "text"

    def test_nested_dom_get(self, parser):
        args = parser.parse_args(["dom", "get", "button", "--index", "2", "--session-dir", "/tmp/x"])

        assert args.target == "button"
        assert args.index == 2
        assert args.session_dir == "/tmp/x"

    def test_details_item_type_validated(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["details", "dom", "1"])

    def test_quiet_and_verbose_exclusive(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["status", "--quiet", "--verbose"])

    def test_network_list_options(self, parser):
        args = parser.parse_args(["network", "list", "--filter", "status-code:>=400", "--preset", "api", "--last", "0"])

        assert args.filter == "status-code:>=400"
        assert args.preset == "api"
        assert args.type is None
        assert args.last == 0
        assert args.func.__name__ == "list_handler"

    def test_network_list_defaults(self, parser):
        args = parser.parse_args(["network", "list"])

        assert (args.filter, args.preset, args.last) == (None, None, 100)

    def test_console_level(self, parser):
        args = parser.parse_args(["console", "--level", "warn", "--last", "10"])

        assert args.level == "warn"
        assert args.last == 10
        assert args.func.__name__ == "console_handler"

    def test_console_level_validated(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["console", "--level", "verbose"])


@pytest.mark.unit
class TestLoadConfiguration:
    def test_unset_flags_keep_env(self, parser, clean_env):
        clean_env.setenv("BDG_CHROME_PORT", "9444")

        config = load_configuration(parser.parse_args(["status"]))

        assert config.chrome_port == 9444

    def test_flag_beats_env(self, parser, clean_env):
        clean_env.setenv("BDG_CHROME_PORT", "9444")

        config = load_configuration(parser.parse_args(["status", "--chrome-port", "9555", "--log-level", "warning"]))

        assert config.chrome_port == 9555
        assert config.log_level == "WARNING"

    def test_verbosity_flags(self, parser, clean_env):
        assert load_configuration(parser.parse_args(["status", "--quiet"])).log_level == "ERROR"
        assert load_configuration(parser.parse_args(["status", "--verbose"])).log_level == "DEBUG"


@pytest.mark.unit
class TestStartOptions:
    def test_split_list(self):
        assert split_list(None) is None
        assert split_list("a, b,,c ") == ["a", "b", "c"]

    def test_only_given_options_forwarded(self, parser, clean_env):
        args = parser.parse_args(["start", "localhost:3000", "--include-all", "--console-level", "warning"])
        args.config = load_configuration(args)

        assert start_options(args) == {
            "url": "localhost:3000",
            "console_level": "warning",
            "include_all": True,
            "chrome_host": "localhost",
            "chrome_port": 9222,
        }


def namespace(parser, *argv):
    args = parser.parse_args(list(argv))
    args.config = Configuration()
    return args


@pytest.mark.unit
class TestOutput:
    def test_emit_json(self, parser, capsys):
        emit(namespace(parser, "status"), {"a": 1}, lambda d: "text")
        assert json.loads(capsys.readouterr().out) == {"a": 1}

    def test_emit_text(self, parser, capsys):
        emit(namespace(parser, "status", "--format", "text"), {"a": 1}, lambda d: f"a is {d['a']}")
        assert capsys.readouterr().out == "a is 1\n"

    def test_report_command_error(self, parser, capsys):
        error = CommandError("Index 5 out of range", suggestion="Use an index between 0 and 1", exit_code=ExitCode.STALE_CACHE)

        code = report_error(namespace(parser, "status"), error)

        assert code == 87
        err = capsys.readouterr().err
        assert "Error: Index 5 out of range" in err
        assert "Suggestion: Use an index between 0 and 1" in err

    def test_report_recovery_hint(self, parser, capsys):
        error = IPCError("Request timeout", details={"recovery": 'Check the daemon with "bdg status"'})

        code = report_error(namespace(parser, "status"), error)

        assert code == int(ExitCode.SOFTWARE_ERROR)
        assert 'Recovery hint: Check the daemon with "bdg status"' in capsys.readouterr().err

    def test_debug_reraises(self, parser):
        args = namespace(parser, "status")
        args.config.log_level = "DEBUG"

        with pytest.raises(CommandError):
            report_error(args, CommandError("boom"))

    def test_parse_json_arg(self):
        assert parse_json_arg(None, "--params") == {}
        assert parse_json_arg('{"expression": "1"}', "--params") == {"expression": "1"}
        with pytest.raises(CommandError, match="Invalid JSON --params") as exc_info:
            parse_json_arg("{oops", "--params")
        assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENTS


@pytest.mark.unit
class TestFormatters:
    def test_format_list(self):
        text = format_list(
            {
                "requests": [
                    {"requestId": "7.1", "status": 404, "method": "GET", "resourceType": "XHR", "url": "https://a.test/x"},
                    {"requestId": "7.2", "method": "POST", "url": "https://a.test/y"},
                ],
                "matchedCount": 2,
                "totalCount": 9,
                "filter": "domain:a.test",
            }
        )

        assert text.splitlines() == [
            "Network requests (2 shown, 2 matched of 9) [domain:a.test]",
            "  [7.1] 404 GET XHR https://a.test/x",
            "  [7.2] ... POST - https://a.test/y",
        ]

    def test_format_console(self):
        text = format_console(
            {
                "messages": [{"index": 3, "timestamp": 1700000000500.0, "type": "error", "text": "boom"}],
                "matchedCount": 1,
                "level": "error",
            }
        )

        assert text.splitlines() == [
            "Console messages (1 of 1, level: error)",
            "  [3] 22:13:20.500 error   boom",
        ]

    def test_format_console_empty(self):
        assert format_console({"messages": []}) == "No console messages"
        assert format_console({"messages": [], "level": "warning"}) == "No warning console messages"

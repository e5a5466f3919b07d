"""Tests for output formatting utilities."""

import json

import yaml

from runguard.core.output import (
    OutputFormat,
    OutputFormatter,
    format_duration,
)


class TestFormatDuration:
    """Tests for format_duration utility."""

    def test_seconds(self):
        assert format_duration(0) == "0.0s"
        assert format_duration(59.9) == "59.9s"

    def test_minutes(self):
        assert format_duration(60) == "1.0m"
        assert format_duration(90) == "1.5m"

    def test_hours(self):
        assert format_duration(3600) == "1.0h"

    def test_days(self):
        assert format_duration(172800) == "2.0d"


class TestOutputFormatter:
    """Tests for OutputFormatter class."""

    def test_quiet_mode_suppresses_output(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print("test message")
        formatter.print_info("info message")
        formatter.print_warning("warning message")
        formatter.print_panel("panel body", title="Gate")
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_quiet_mode_keeps_data(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.JSON, quiet=True, color=False)
        formatter.print_data({"status": "completed"})
        assert json.loads(capsys.readouterr().out) == {"status": "completed"}

    def test_error_always_prints(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print_error("error message")
        captured = capsys.readouterr()
        assert "error message" in captured.err

    def test_json_output_list(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.JSON, color=False)
        data = [{"run_id": "a"}, {"run_id": "b"}]
        formatter.print_table(data, columns=["run_id"])
        assert json.loads(capsys.readouterr().out) == data

    def test_yaml_output(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.YAML, color=False)
        data = {"status": "waiting_on_gate", "step_index": 2}
        formatter.print_data(data)
        assert yaml.safe_load(capsys.readouterr().out) == data

    def test_raw_output_dict(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.RAW, color=False)
        formatter.print_data({"status": "failed", "failed_step": "backup"})
        captured = capsys.readouterr()
        assert "status: failed" in captured.out
        assert "failed_step: backup" in captured.out

    def test_raw_output_records_are_tabulated(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.RAW, color=False)
        rows = [
            {"run_id": "r1", "status": "completed", "ignored": 1},
            {"run_id": "r2", "status": "aborted", "ignored": 2},
        ]
        formatter.print_table(rows, columns=["run_id", "status"])
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["run_id", "status"]
        assert lines[2].split() == ["r2", "aborted"]
        assert "ignored" not in lines[0]


class TestStyleStatus:
    """Tests for run status styling."""

    def test_known_status_is_styled(self):
        formatter = OutputFormatter(color=True)
        assert formatter.style_status("failed") == "[red]failed[/red]"

    def test_no_color_returns_plain(self):
        formatter = OutputFormatter(color=False)
        assert formatter.style_status("failed") == "failed"

    def test_unknown_status_is_plain(self):
        formatter = OutputFormatter(color=True)
        assert formatter.style_status("mystery") == "mystery"


class TestOutputFormat:
    """Tests for OutputFormat enum."""

    def test_string_comparison(self):
        assert OutputFormat.TABLE == "table"
        assert OutputFormat("yaml") is OutputFormat.YAML

"""Tests for the command-line entry point."""

import json
import logging
from unittest.mock import patch

import pytest

import llm_bench
from llm_bench import build_parser, main
from report import compute_report


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Drop handlers main() installs on the root logger."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    root_logger.handlers = handlers
    root_logger.setLevel(level)


class TestParser:
    """Test argument parsing."""

    def test_defaults(self):
        """Test defaults for an OpenAI streaming run."""
        args = build_parser().parse_args(["--model", "m"])
        assert args.protocol == "openai"
        assert args.stream is True
        assert args.concurrency == 1
        assert args.count == 1
        assert args.timeout_s == 300.0
        assert args.max_tokens == 4096

    def test_no_stream(self):
        """Test streaming can be switched off."""
        args = build_parser().parse_args(["--model", "m", "--no-stream", "--protocol", "anthropic"])
        assert args.stream is False
        assert args.protocol == "anthropic"

    def test_prompt_options_are_exclusive(self):
        """Test only one prompt source may be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--model", "m", "--prompt", "a", "--synthetic-chars", "10"])


class TestMain:
    """Test the end-to-end CLI flow."""

    @pytest.mark.parametrize("flag", ["--concurrency", "--count", "--timeout-s", "--max-tokens"])
    def test_rejects_non_positive(self, flag):
        """Test numeric flags must be positive."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--model", "m", flag, "0"])
        assert exc_info.value.code == 2

    def test_config_error_exits_with_usage(self):
        """Test an invalid base URL is reported as a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--model", "m", "--base-url", "ftp://example.com"])
        assert exc_info.value.code == 2

    def test_missing_prompt_file(self, tmp_path):
        """Test a missing prompt file is reported as a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--model", "m", "--prompt-file", str(tmp_path / "nope.txt")])
        assert exc_info.value.code == 2

    def test_prints_report(self, capsys):
        """Test the report and error summary are printed as JSON."""

        async def fake_run(args):
            report = compute_report([], 0.0, model=args.model)
            return {"task_id": "t", "report": report.to_dict(), "errors": [{"message": "HTTP 500", "count": 2}]}

        with patch.object(llm_bench, "_run_from_args", fake_run):
            main(["--model", "m", "--prompt", "hi", "--log-level", "WARNING"])

        output = json.loads(capsys.readouterr().out)
        assert output["report"]["model"] == "m"
        assert output["errors"] == [{"message": "HTTP 500", "count": 2}]

"""Tests for the reconciliation CLI."""

import json
from unittest.mock import AsyncMock, patch

from pos_payments.exceptions import GatewayConfigError
from pos_payments.reconciliation.cli import create_parser, main

REGISTER_PATH = "pos_payments.reconciliation.cli.PaymentGatewayClient.register_callback_urls"


class TestParser:
    """Tests for argument parsing."""

    def test_match_options(self):
        args = create_parser().parse_args(["match", "--output", "out.json", "--summary-only"])
        assert args.command == "match"
        assert args.output == "out.json"
        assert args.summary_only is True

    def test_no_command(self):
        assert main([]) == 1


class TestCommands:
    """Tests for running commands against an empty database."""

    def test_expire(self, capsys):
        assert main(["expire"]) == 0
        assert json.loads(capsys.readouterr().out) == {"expired": 0}

    def test_match_summary(self, capsys):
        assert main(["match", "--summary-only"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["statistics"]["qr_matched"] == 0
        assert "matched" not in output

    def test_match_to_file(self, tmp_path):
        target = tmp_path / "report.json"
        assert main(["match", "--output", str(target)]) == 0
        assert json.loads(target.read_text())["matched"] == []

    def test_register_urls(self, capsys):
        with patch(REGISTER_PATH, new=AsyncMock(return_value={"ResponseCode": "0"})):
            assert main(["register-urls"]) == 0
        assert json.loads(capsys.readouterr().out) == {"ResponseCode": "0"}

    def test_register_urls_failure(self):
        with patch(REGISTER_PATH, new=AsyncMock(side_effect=GatewayConfigError("URLs missing"))):
            assert main(["register-urls"]) == 2

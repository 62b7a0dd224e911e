"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest

from payper.cli import main

from conftest import reference, token_transfer_tx


@pytest.fixture
def cli_service(service):
    with patch("payper.cli.build_service", return_value=service):
        yield service


class TestCommands:
    """Test each subcommand against a fake-backed service."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "payper" in capsys.readouterr().out

    def test_models(self, cli_service, capsys):
        assert main(["models", "--type", "image"]) == 0
        out = capsys.readouterr().out
        assert "gpt-image-1" in out
        assert "sora-2" not in out

    def test_price_json(self, cli_service, capsys):
        assert main(["price", "--json"]) == 0
        body = json.loads(capsys.readouterr().out)
        assert body["priceUSD"] == "0.0001"
        assert body["source"] == "primary"

    def test_quote(self, cli_service, capsys):
        assert main(["quote", "gpt-image-1"]) == 0
        out = capsys.readouterr().out
        assert "466" in out
        assert "46 (10%)" in out

    def test_quote_unknown_model(self, cli_service, capsys):
        assert main(["quote", "midjourney"]) == 2
        assert "Unknown model" in capsys.readouterr().err

    def test_verify(self, cli_service, ledger, capsys):
        ledger.transactions[reference("3")] = token_transfer_tx(466)

        assert main(["verify", reference("3"), "--tokens", "466"]) == 0
        assert json.loads(capsys.readouterr().out)["outcome"] == "verified"

        assert main(["verify", reference("3"), "--tokens", "500"]) == 1
        assert json.loads(capsys.readouterr().out)["outcome"] == "mismatched"

    def test_verify_rejects_malformed_reference(self, cli_service, capsys):
        assert main(["verify", "not-a-signature", "--tokens", "1"]) == 2
        assert "not a valid transaction signature" in capsys.readouterr().err

    def test_status_wait(self, cli_service, mock_adapter, capsys):
        task_id = mock_adapter.create_task("a fox", {})

        assert main(["status", task_id, "--model", "qwen", "--wait", "--interval", "0"]) == 0
        body = json.loads(capsys.readouterr().out)
        assert body["state"] == "completed"
        assert body["taskId"] == task_id

    def test_status_failed_task(self, cli_service, mock_adapter, capsys):
        mock_adapter.fail = True
        mock_adapter.polls_until_done = 0
        task_id = mock_adapter.create_task("a fox", {})

        assert main(["status", task_id, "--model", "qwen", "--wait"]) == 1
        body = json.loads(capsys.readouterr().out)
        assert body["errorMessage"] == "mock failure"

    def test_serve(self):
        with patch("uvicorn.run") as run:
            assert main(["serve", "--port", "9000"]) == 0
        args, kwargs = run.call_args
        assert args == ("api.main:create_app",)
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9000

"""
Tests for sigprint logging: silent as a library, structured once configured.
"""

from __future__ import annotations

import json
import logging

from sigprint import (
    LOGGER_NAME,
    SignRequest,
    SigningHistoryStore,
    check_message_before_sign,
    cli,
    configure_logging,
    create_message_info,
)

from conftest import ALICE


def test_library_calls_write_nothing(capsys, tmp_path):
    """Without configure_logging, the core must not print to stdout or stderr."""
    info = create_message_info(SignRequest(ALICE, "Sign in nonce 1", "a.com"), {"a.com": ("x",)})
    check_message_before_sign(info, {}, {})
    store = SigningHistoryStore(str(tmp_path / "history.json"))
    store.commit(info)
    SigningHistoryStore.load(str(tmp_path / "history.json"))

    out, err = capsys.readouterr()
    assert out == ""
    assert err == ""


def test_configured_json_logs_go_to_stderr(capsys):
    configure_logging("INFO", "json")
    create_message_info(SignRequest(ALICE, "Sign in nonce 1", "a.com"), {"a.com": ("x",)})

    out, err = capsys.readouterr()
    assert out == ""
    event = json.loads(err.strip().splitlines()[-1])
    assert event["event"] == "template_changed"
    assert event["domain"] == "a.com"
    assert event["level"] == "info"


def test_configured_level_filters(capsys):
    configure_logging("WARNING", "console")
    create_message_info(SignRequest(ALICE, "Sign in nonce 1", "a.com"), {"a.com": ("x",)})
    assert capsys.readouterr().err == ""
    assert logging.getLogger(LOGGER_NAME).level == logging.WARNING


def test_cli_debug_logging(runner, store_path):
    result = runner.invoke(cli, ["--store", store_path, "--log-level", "DEBUG", "check",
                                 "Sign in to a.com", "--domain", "a.com", "--address", ALICE, "--pretty"])
    assert result.exit_code == 0, result.output
    assert "message_assessed" in result.output

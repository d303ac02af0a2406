from __future__ import annotations

import io
import json
import logging

import structlog

from elara.logging import bind_request_context, redact_secrets, setup_logging


def test_redact_secrets_masks_credentials() -> None:
    event = redact_secrets(
        None,
        "info",
        {"event": "x", "credential": "sk-abcdefghijkl", "token": "short", "api_key": "", "model": "m"},
    )

    assert event["credential"] == "sk-a***"
    assert event["token"] == "***"
    assert event["api_key"] == ""
    assert event["model"] == "m"


def test_json_lines_carry_request_context() -> None:
    stream = io.StringIO()
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    setup_logging(level="INFO", fmt="json", stream=stream)
    try:
        bind_request_context(route="messages", model="auto", provider=None)
        logging.getLogger("elara.test").info("request.logged")
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()
        root.handlers[:], level = saved
        root.setLevel(level)

    line = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert line["event"] == "request.logged"
    assert line["route"] == "messages"
    assert line["model"] == "auto"
    assert "provider" not in line

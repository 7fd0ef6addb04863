import logging

import structlog

from shelfsync.utils.logging import log_context, new_run_id, setup_logging


def test_log_context_binds_and_unbinds():
    with log_context(redirect_pass="abc123"):
        assert structlog.contextvars.get_contextvars()["redirect_pass"] == "abc123"
    assert "redirect_pass" not in structlog.contextvars.get_contextvars()


def test_log_context_unbinds_on_error():
    try:
        with log_context(auth_transition="loading->authenticated"):
            raise RuntimeError("handler failed")
    except RuntimeError:
        pass
    assert "auth_transition" not in structlog.contextvars.get_contextvars()


def test_run_ids_are_short_and_unique():
    first, second = new_run_id(), new_run_id()
    assert len(first) == 8
    assert first != second


def test_setup_logging_does_not_stack_handlers():
    root = logging.getLogger()
    before = len(root.handlers)
    setup_logging("DEBUG")
    setup_logging("INFO", json_logs=True)

    assert len(root.handlers) <= before + 1
    assert root.level == logging.INFO
    assert logging.getLogger("urllib3").level == logging.WARNING

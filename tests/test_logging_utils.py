import json
import logging
import sys

from raysnipe.logging_utils import (
    JsonFormatter,
    configure_logging,
    serialize_for_log,
    setup_stdout_logging,
    warn_once_per,
)


def _restore_root(original_handlers, original_level):
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler not in original_handlers:
            root.removeHandler(handler)
            try:
                handler.close()
            except Exception:
                pass
    for handler in original_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(original_level)


def test_setup_stdout_logging_removes_duplicate_stream_handlers():
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler(sys.stdout))

        handler = setup_stdout_logging()

        stream_handlers = [h for h in root.handlers if isinstance(h, logging.StreamHandler)]
        assert stream_handlers == [handler]
        assert handler.stream is sys.stdout
        assert setup_stdout_logging() is handler
    finally:
        _restore_root(original_handlers, original_level)


def test_configure_logging_json(monkeypatch):
    monkeypatch.setenv("LOG_JSON", "1")
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        handler = configure_logging(level="debug")
        assert isinstance(handler.formatter, JsonFormatter)
        assert root.level == logging.DEBUG
    finally:
        _restore_root(original_handlers, original_level)


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("raysnipe.swap", logging.INFO, __file__, 10, "swap %s", ("ok",), None)
    record.signature = "abc"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "swap ok"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "raysnipe.swap"
    assert payload["signature"] == "abc"
    assert payload["ts"].endswith("Z")


def test_warn_once_per(caplog):
    logger = logging.getLogger("raysnipe.test")
    with caplog.at_level(logging.WARNING):
        assert warn_once_per(1.0, "k", "endpoint %s down", "a", logger=logger) is True
        assert warn_once_per(1.0, "k", "endpoint %s down", "a", logger=logger) is False
        assert warn_once_per(1.0, "other", "endpoint %s down", "b", logger=logger) is True
        assert warn_once_per(0, "k", "endpoint %s down", "c", logger=logger) is True
    messages = [r.getMessage() for r in caplog.records]
    assert messages == ["endpoint a down", "endpoint b down", "endpoint c down"]


def test_serialize_for_log():
    text = serialize_for_log({"b": b"\x00" * 4, "a": "x" * 10, "n": None, "k": (1, 2)}, max_string=4)
    assert json.loads(text) == {"a": "xxxx...(10 chars)", "b": "<4 bytes>", "k": [1, 2], "n": None}
    assert serialize_for_log(object()).startswith('"<object object')

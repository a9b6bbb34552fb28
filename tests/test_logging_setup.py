from __future__ import annotations

import logging
from pathlib import Path

import pytest

from vertebrae.logging_setup import _ConsoleNoiseFilter, _installed, setup_logging


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


def _own_handlers() -> list[logging.Handler]:
    return [handler for handler in logging.getLogger().handlers if handler in _installed]


def test_console_filter_keeps_own_records() -> None:
    noise = _ConsoleNoiseFilter()
    assert noise.filter(_record("vertebrae.service", logging.DEBUG))
    assert not noise.filter(_record("urllib3", logging.WARNING))
    assert noise.filter(_record("urllib3", logging.ERROR))


def test_third_party_warnings_stay_off_the_console(capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging()
    try:
        logging.getLogger("somelib.http").warning("retrying request")
        logging.getLogger("somelib.http").error("connection refused")
        logging.getLogger("vertebrae.service").warning("store is large")
        err = capsys.readouterr().err
    finally:
        setup_logging()
    assert "retrying request" not in err
    assert "connection refused" in err
    assert "store is large" in err


def test_setup_logging_replaces_handlers_and_writes_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "vtb.log"
    foreign = logging.NullHandler()
    logging.getLogger().addHandler(foreign)
    try:
        setup_logging()
        setup_logging(verbose=True, log_file=log_file)
        handlers = _own_handlers()
        assert len(handlers) == 2
        assert all(handler.level == logging.DEBUG for handler in handlers)
        assert foreign in logging.getLogger().handlers

        logging.getLogger("vertebrae.test").info("hello file")
        logging.getLogger("somelib").debug("library detail")
        for handler in handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "hello file" in text
        assert "library detail" in text
    finally:
        setup_logging()
        logging.getLogger().removeHandler(foreign)
    assert len(_own_handlers()) == 1

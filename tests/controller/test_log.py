"""Tests for the loguru setup."""

from __future__ import annotations

import logging
import sys

import pytest
from loguru import logger

from tfconductor.controller.log import setup_logging


@pytest.fixture
def lines():
    captured: list[str] = []
    yield captured
    logger.remove()
    logger.add(sys.stderr)
    logger.configure(extra={})
    logging.basicConfig(handlers=[], force=True)
    logging.getLogger().setLevel(logging.WARNING)


def test_bound_fields_are_appended(lines: list[str]) -> None:
    setup_logging("debug", sink=lines.append)
    logger.bind(workspace="0b3e2f5c", operation="observe").info("Planned {} changes", 2)

    assert lines[-1].rstrip("\n").endswith("Planned 2 changes operation=observe workspace=0b3e2f5c")
    assert "| INFO     |" in lines[-1]


def test_plain_lines_have_no_trailing_context(lines: list[str]) -> None:
    setup_logging(sink=lines.append)
    logger.info("Controller started")
    assert lines[-1].rstrip("\n").endswith(" - Controller started")


def test_level_filters(lines: list[str]) -> None:
    setup_logging("WARNING", sink=lines.append)
    logger.info("hidden")
    logger.warning("shown")
    assert [line.rstrip("\n").rsplit(" - ", 1)[1] for line in lines] == ["shown"]


def test_stdlib_records_keep_their_logger_name(lines: list[str]) -> None:
    setup_logging("DEBUG", sink=lines.append)
    logging.getLogger("tfconductor.vendor").warning("disk %s", "full")

    line = lines[-1]
    assert "tfconductor.vendor:" in line
    assert "| WARNING  |" in line
    assert line.rstrip("\n").endswith(" - disk full")


def test_noisy_libraries_only_warn(lines: list[str]) -> None:
    setup_logging("DEBUG", sink=lines.append)
    lines.clear()

    logging.getLogger("asyncio").info("Using selector: EpollSelector")
    logging.getLogger("httpx").info("HTTP Request: GET https://example.org 200")
    assert lines == []

    logging.getLogger("git.cmd").warning("git exited 128")
    assert len(lines) == 1


def test_returns_handler_ids(lines: list[str]) -> None:
    (handler_id,) = setup_logging(sink=lines.append)
    logger.remove(handler_id)
    logger.info("after removal")
    assert not any("after removal" in line for line in lines)

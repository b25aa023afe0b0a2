"""Tests for the package-level logger setup."""

from __future__ import annotations

import logging

import pytest

import barsync


def test_package_logger_is_shared():
    assert barsync.log is logging.getLogger("barsync")
    assert barsync.log.handlers


@pytest.mark.parametrize(
    ("configured", "expected"),
    [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        ("chatty", logging.INFO),
    ],
)
def test_log_level_comes_from_environment(monkeypatch, configured, expected):
    monkeypatch.setenv("BARSYNC_LOG_LEVEL", configured)

    assert barsync._log_level() == expected


def test_log_level_defaults_to_info(monkeypatch):
    monkeypatch.delenv("BARSYNC_LOG_LEVEL", raising=False)

    assert barsync._log_level() == logging.INFO

"""Shared fixtures for the exporter tests."""

import logging
import uuid

import pytest
from prometheus_client import CollectorRegistry

from mini_metric_exporter import (
    FileHandler,
    Rule,
    ShellHandler,
    SourceKind,
)


@pytest.fixture
def logger():
    # Unique name so handlers and levels never leak between tests
    log = logging.getLogger(f"tests.{uuid.uuid4().hex[:8]}")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def shell_handler(logger):
    """Build a ShellHandler for a command, with short timeouts by default."""
    def build(command, command_timeout=5, wait_delay=1):
        rule = Rule(name="test_rule", command=command)
        return ShellHandler(
            rule, SourceKind.SHELL, logger,
            command_timeout=command_timeout,
            wait_delay=wait_delay,
        )
    return build


@pytest.fixture
def file_handler(logger):
    def build(path):
        rule = Rule(name="test_rule", file=str(path))
        return FileHandler(rule, SourceKind.FILE, logger)
    return build

"""Test configuration for the nameof generator."""

import logging


def pytest_configure(config):
    """Hide file paths in the terminal report and keep generator logs quiet."""
    terminal = config.pluginmanager.getplugin("terminal")
    if terminal:
        terminal.TerminalReporter.showfspath = False
    logging.getLogger("nameofgen").setLevel(logging.INFO)

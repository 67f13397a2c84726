"""
CLI layer for dagrun.

Provides a Typer application that loads workflow YAML files, runs them
through the scheduler and prints run state. All engine logic lives in
``dagrun.orchestration``; this package handles only argument parsing and
terminal output.

Entry point::

    dagrun --help
"""

from dagrun.cli.app import app

__all__ = ["app"]

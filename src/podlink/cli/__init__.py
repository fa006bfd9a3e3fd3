"""podlink command line interface."""

from podlink.cli.app import app

__all__ = ["app"]

"""Command line interface for infra-deploy."""

from .main import cli

__all__ = ["cli"]

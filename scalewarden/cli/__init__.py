"""ScaleWarden command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``scalewarden`` script).
"""

from scalewarden.cli.main import cli

__all__ = ["cli"]

"""
Entry point for running crm_dedupe as a module.

Usage:
    python -m crm_dedupe --help
    python -m crm_dedupe connect --account alice
    python -m crm_dedupe groups --account alice --run-key import-2024-01
"""

from crm_dedupe.cli import cli

if __name__ == "__main__":
    cli()

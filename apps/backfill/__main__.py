"""
Backfill Module Entry Point

Allows execution via: python -m apps.backfill <apikey> <from> <to> [<max posts>]
"""

from apps.backfill.cli import cli

if __name__ == "__main__":
    cli()

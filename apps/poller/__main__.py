"""
Poller Module Entry Point

Allows execution via: python -m apps.poller
"""

from apps.poller.scheduler import cli

if __name__ == "__main__":
    cli()

"""Entry point for ``python -m rtcpipe``."""
from .cli import app

if __name__ == "__main__":
    app()

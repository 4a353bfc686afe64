"""Entry point for running ocbridge as a module: python -m ocbridge"""

from ocbridge.cli.commands import app

if __name__ == "__main__":
    app()

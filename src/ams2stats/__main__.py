"""
ams2stats CLI Entry Point

Allows running the package as a module: python -m ams2stats
"""

from ams2stats.cli import app


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

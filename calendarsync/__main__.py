"""Entry point for `python -m calendarsync` command."""

import asyncio
import sys

from calendarsync.cli import main_entry


def main() -> None:
    """Run the CLI and exit with its status code."""
    try:
        exit_code = asyncio.run(main_entry())
    except KeyboardInterrupt:
        print("\nInterrupted")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

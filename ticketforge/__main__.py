"""
Entry point for running ticketforge as a module.

Usage:
    python -m ticketforge runtime           # Show the container runtime
    python -m ticketforge containers        # List session containers
    python -m ticketforge gate "git push"   # Check the review gate

This is equivalent to:
    python -m ticketforge.cli.forge_cli [args]
"""

import sys


def main():
    """Main entry point."""
    from ticketforge.cli.forge_cli import main as cli_main
    return cli_main()


if __name__ == "__main__":
    sys.exit(main())

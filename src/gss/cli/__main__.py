"""CLI entry point for gss.cli module.

Enables execution via: python -m gss.cli <command>
"""

from gss.cli.operator import main

if __name__ == "__main__":
    raise SystemExit(main())

"""CLI entry point for genledger.cli module.

Enables execution via: python -m genledger.cli FILE [OPTIONS]
"""

from genledger.cli.import_listing import main

if __name__ == "__main__":
    raise SystemExit(main())

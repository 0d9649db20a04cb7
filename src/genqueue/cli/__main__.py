"""CLI entry point for genqueue.cli module.

Enables execution via: python -m genqueue.cli
"""

from genqueue.cli.expire_jobs import main

if __name__ == "__main__":
    main()

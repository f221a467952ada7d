"""Entry point for running InboxPilot as a module.

Usage:
    python -m inboxpilot validate-config
    python -m inboxpilot --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from inboxpilot.cli import main  # noqa: E402

if __name__ == "__main__":
    main()

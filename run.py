#!/usr/bin/env python3
"""
Balance Checker Server Entry Point

Starts the line-protocol server on the configured port (6969 by default).
Extra command line arguments are passed through to balance-server.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from balance_checker.config import get_config
from balance_checker.server import main


if __name__ == "__main__":
    config = get_config()
    print("💰 Starting Balance Checker...")
    print(f"📁 Ledger files in: {config.users_dir}")
    print(f"🔒 Per-account locking: {'on' if config.lock_accounts else 'off'}")
    print(f"🌐 Listening on: {config.server_host}:{config.server_port}")
    print()

    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\n👋 Shutting down Balance Checker...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)

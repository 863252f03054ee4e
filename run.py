#!/usr/bin/env python3
"""
Wallet Core Entry Point

Starts the FastAPI server with the configured storage backend.
"""

import sys

from wallet_core.api import run_server
from wallet_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Wallet Core...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Wallet Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

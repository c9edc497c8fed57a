#!/usr/bin/env python3
"""
Simply Core Entry Point

Starts the FastAPI server with the ledger and accrual engine.
"""

import sys

from simply_core.api import run_server
from simply_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Simply Core...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()
    
    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Simply Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

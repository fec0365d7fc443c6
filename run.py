#!/usr/bin/env python3
"""
ATM Bank Entry Point

Starts the FastAPI server over the flat-file bank in the configured data directory.
"""

import sys

from atm_bank.api import run_server
from atm_bank.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting ATM Bank...")
    print(f"Data directory: {config.data_path.resolve()}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down ATM Bank...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

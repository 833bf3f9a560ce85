#!/usr/bin/env python3
"""
profitledger API Startup Script

Starts the sync API (POST /sync/run, POST /sync/backfill, GET /health) with
uvicorn for local development.
"""

import sys

import uvicorn

from profitledger.utils.env import load_env_file


def main():
    """Start the profitledger API server."""
    print("Starting profitledger API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    if not load_env_file():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   CRON_SECRET=your-shared-secret")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("")

    try:
        uvicorn.run(
            "profitledger.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["profitledger"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down profitledger API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
journeyx API Startup Script

Runs the attribution API under uvicorn with autoreload for local work.
Run from the backend/ directory so the journeyx package is importable.
"""

import os
import sys

import uvicorn

from journeyx.utils.env import load_env_file


def main():
    """Start the journeyx API server."""
    load_env_file()
    port = int(os.getenv("PORT", "8000"))

    print("Starting journeyx attribution API")
    print(f"   Swagger UI:  http://localhost:{port}/docs")
    print(f"   Health:      http://localhost:{port}/health")
    if not os.getenv("REDIS_URL"):
        print("WARNING: REDIS_URL is not set, using redis://localhost:6379/0")
    print("")

    try:
        uvicorn.run(
            "journeyx.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            reload=os.getenv("ENVIRONMENT", "development") == "development",
            reload_dirs=["journeyx"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down journeyx API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

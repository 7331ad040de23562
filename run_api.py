#!/usr/bin/env python3
"""
Development script to run the resilience API locally.

Starts the FastAPI application factory with uvicorn, hot reloading and
detailed logging.
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))


def main():
    """Run the FastAPI application in development mode."""
    os.environ.setdefault("DEBUG", "true")
    os.environ.setdefault("VERSION", "1.0.0")

    # File-backed SQLite so persisted errors survive reloads
    os.environ.setdefault("DATABASE_URL", f"sqlite:///{project_root / 'toolserver_observability.db'}")
    os.environ.setdefault("METRICS_INTERVAL", "60")

    print("Starting resilience API")
    print(f"   Database: {os.environ.get('DATABASE_URL')}")
    print(f"   Monitoring interval: {os.environ.get('METRICS_INTERVAL')}s")
    print("   Documentation: http://localhost:8080/docs")
    print("   Health: http://localhost:8080/health")
    print()

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level="info",
        access_log=True,
        reload_dirs=[str(project_root / d) for d in ("api", "observability", "recovery", "store", "service")]
    )


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Script to run the listing monitor status API with an embedded scheduler.
"""

import uvicorn
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from utilities.config import get_settings
from utilities.logger import setup_logging


def main():
    """Run the API server."""
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        debug=settings.debug
    )
    print("Starting Listing Monitor API Server")
    print(f"Host: {settings.api_host}")
    print(f"Port: {settings.api_port}")
    print(f"Targets: {len(settings.get_monitoring_urls())}")
    print("=" * 50)

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()

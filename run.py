#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with the host, port and logging taken from
LMS_* environment settings.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lms_ledger.config import get_config
from lms_ledger.logging_config import setup_logging
from lms_ledger.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(
        "Starting loan ledger API on %s:%d (storage=%s, currency=%s)",
        config.api_host, config.api_port, config.storage_backend, config.currency
    )

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger API")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)

#!/usr/bin/env python
"""
Market Data API Server Runner.

Usage:
    python run_api.py
    
Or with PM2:
    pm2 start run_api.py --interpreter python
"""

import logging
import os
import sys

import uvicorn

from aggregation.config import AggregatorConfig, setup_logging


logger = logging.getLogger(__name__)


def main():
    """Run the market data API server."""
    config = AggregatorConfig.from_env()
    setup_logging(config.log_level, config.log_format)
    
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", os.getenv("PORT", "8000")))
    reload = os.getenv("ENVIRONMENT", "production") == "development"
    
    logger.info(f"Starting Market Data API on {host}:{port}")
    
    try:
        uvicorn.run(
            "api.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=reload,
            log_level=config.log_level.lower(),
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

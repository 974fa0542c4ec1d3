#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with configuration read from SERVICING_* environment
variables (or .env). Startup aborts if the JWT or CSRF secret is missing.
"""

import sys

import uvicorn
from pydantic import ValidationError

from loan_servicing.config import load_config


if __name__ == "__main__":
    try:
        config = load_config()
    except ValidationError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)

    print("Starting Loan Servicing API...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            "loan_servicing.api:create_app_from_env",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing API...")

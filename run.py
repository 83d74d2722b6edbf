#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server, or runs the lifecycle engine job once with
``python run.py engine``.
"""

import sys

from loan_engine.api import LoanEngineSystem, run_server
from loan_engine.config import get_config
from loan_engine.jobs import run_loan_engine_job
from loan_engine.logging_config import setup_logging


def main(argv):
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    command = argv[1] if len(argv) > 1 else "serve"

    if command == "engine":
        system = LoanEngineSystem(config=config)
        job = run_loan_engine_job(system.engine, system.organization_manager)
        for error in job.errors:
            logger.error(error)
        return 0 if job.success else 1

    if command == "serve":
        logger.info(f"Starting loan engine API on {config.api_host}:{config.api_port}")
        logger.info(f"Engine job expected on schedule '{config.engine_schedule_cron}' (python run.py engine)")
        try:
            run_server()
        except KeyboardInterrupt:
            logger.info("Shutting down loan engine API")
        return 0

    logger.error(f"Unknown command: {command}")
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv))

# lifecycle_engine/run_api.py
"""Run the customer lifecycle HTTP API."""

import logging
import os

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    from lifecycle_engine.container import lifecycle_manager

    host = os.getenv("LIFECYCLE_API_HOST", "0.0.0.0")
    port = int(os.getenv("LIFECYCLE_API_PORT", "8000"))

    recovered = lifecycle_manager.recover_interrupted()
    if recovered:
        logger.warning(f"Recovered {len(recovered)} interrupted provisioning run(s)")

    logger.info(f"Starting Customer Lifecycle API on {host}:{port}")
    try:
        uvicorn.run("lifecycle_engine.api.main:app", host=host, port=port)
    finally:
        lifecycle_manager.shutdown(wait=False)


if __name__ == "__main__":
    main()

"""
Run the Foldly upload service.
"""
import argparse
import uvicorn
from foldly.config import config

if __name__ == "__main__":
    # Setup command line arguments
    parser = argparse.ArgumentParser(description="Run the Foldly upload service")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug level logging"
    )
    args = parser.parse_args()

    # Run the FastAPI application using uvicorn
    uvicorn.run(
        "foldly.main:app",
        host="0.0.0.0",
        port=config.application_port,
        reload=False,
        log_level="debug" if args.debug else "info",
    )

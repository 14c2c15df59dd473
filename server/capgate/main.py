"""capgate - Entry Point"""

from .config import get_settings
from .logging_config import configure_logging, get_logger

# Configure logging at module load (before any other imports that might log)
configure_logging(get_settings().log_level)
logger = get_logger(__name__)


def run_http():
    """Run the REST API under uvicorn."""
    import uvicorn

    from .api import app
    from .database import init_schema

    settings = get_settings()
    init_schema()
    logger.info("Starting capgate API", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(app, host=settings.host, port=settings.port)


def main():
    run_http()


if __name__ == "__main__":
    main()

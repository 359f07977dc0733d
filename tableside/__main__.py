"""
Run the session backend with `python -m tableside`.
"""
import uvicorn
from tableside.core.config import settings
from tableside.core.logging import logger

def main():
    """Serve the device session API with uvicorn."""
    logger.info(
        f"Serving device sessions on {settings.host}:{settings.port} "
        f"({settings.environment.value})"
    )
    logger.info(
        f"Sessions last {settings.session.duration_hours}h, "
        f"changes published via {settings.session.change_feed_backend.value}"
    )

    # One process: the local change feed only reaches subscribers in-process
    uvicorn.run(
        "tableside.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.logging.level.lower(),
    )

if __name__ == "__main__":
    main()

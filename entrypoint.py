"""Run the classroom interaction server under uvicorn."""
import uvicorn

from constants import LOG_FILE, LOG_LEVEL, REDIS_DB, REDIS_HOST, REDIS_PORT, SERVER_HOST, SERVER_PORT, SERVER_RELOAD
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    logger.info(
        f"Starting classroom interaction server on {SERVER_HOST}:{SERVER_PORT} "
        f"(redis {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}, reload={SERVER_RELOAD})"
    )
    # Logging is configured above; keep uvicorn from replacing it
    uvicorn.run("app:app", host=SERVER_HOST, port=SERVER_PORT, reload=SERVER_RELOAD, log_config=None)


if __name__ == "__main__":
    main()

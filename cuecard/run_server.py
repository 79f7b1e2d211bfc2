import logging

from cuecard.config import Config

logger = logging.getLogger(__name__)


def main():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    for problem in Config.validate():
        logger.warning("[Config] Missing or invalid: %s", problem)

    import uvicorn
    uvicorn.run("cuecard.main:app", host=Config.HOST, port=Config.PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()

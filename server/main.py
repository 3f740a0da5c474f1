import logging
import uvicorn
from . import config


def run():
    settings = config.get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    logging.getLogger(__name__).info("Timer sync server starting on %s:%s", settings.host, settings.port)
    uvicorn.run("server.api:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()

import uvicorn

from . import config


def main() -> None:
    # a single process: SQLite does not like several writers
    server = uvicorn.Server(uvicorn.Config(
        "auctionflow.server:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    ))
    server.run()


if __name__ == "__main__":
    main()

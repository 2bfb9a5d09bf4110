import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def add_cors(app: FastAPI, origins: list[str]) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def configure_logging(level: str = "INFO") -> None:
    logging.captureWarnings(True)
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)

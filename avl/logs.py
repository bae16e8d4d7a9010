from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    # docker-py and urllib3 are chatty at DEBUG.
    for noisy in ("urllib3", "docker"):
        logging.getLogger(noisy).setLevel(max(logging.getLogger().level, logging.INFO))

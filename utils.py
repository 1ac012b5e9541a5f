from __future__ import annotations
import random
import logging
import sys
import numpy as np
import torch


def setup_actor_logging():
    """Configure logging for Ray actors (they run in separate processes).

    Importing logger.py in the actor process runs its module-level setup;
    the handler is only re-added if that did not happen.
    """
    from logger import logger as actor_logger

    if not actor_logger.handlers:

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(logging.INFO)
        formatter = logging.Formatter(fmt='[%(asctime)s] %(levelname)-8s %(message)s', datefmt='%H:%M:%S')
        handler.setFormatter(formatter)
        actor_logger.addHandler(handler)
        actor_logger.setLevel(logging.DEBUG)

    return actor_logger


def set_seed(seed: int = 1337):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def format_duration(duration: float) -> str:
    """Render seconds as '12.3s' or '2m 5.0s'."""
    if duration < 60:
        return f"{duration:.1f}s"
    minutes = int(duration // 60)
    seconds = duration % 60
    return f"{minutes}m {seconds:.1f}s"

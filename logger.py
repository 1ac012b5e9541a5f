import logging
import sys

# Create logger
logger = logging.getLogger("bspgd")
logger.setLevel(logging.DEBUG)

# Console handler; INFO by default so per-peer theta dumps stay quiet
handler = logging.StreamHandler(sys.stdout)
handler.setLevel(logging.INFO)

# Create formatter
formatter = logging.Formatter(
    fmt='[%(asctime)s] %(levelname)-8s %(message)s',
    datefmt='%H:%M:%S'
)
handler.setFormatter(formatter)

# Add handler to logger
logger.addHandler(handler)
logger.propagate = False


def set_verbose(verbose: bool):
    """Switch the console handler between INFO and DEBUG."""
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)

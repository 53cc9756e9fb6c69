import logging

LOGGER_NAME = "fuzzer"
VERBOSITY_LEVELS = {0: logging.ERROR, 1: logging.INFO, 2: logging.DEBUG}


def configure_logger(verbosity: int = 1, prefix: str = "prober") -> logging.Logger:
    """Attach a console handler to the shared `fuzzer` logger.

    Verbosity 0, 1 and 2 map to ERROR, INFO and DEBUG. Calling this again
    replaces the handler instead of stacking a second one.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = False
    verbosity = min(max(0, verbosity), 2)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        if getattr(handler, "_prober_console", False):
            logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler._prober_console = True
    console_handler.setFormatter(logging.Formatter(f"[{prefix} %(asctime)s ~ %(levelname)s]: %(message)s"))
    console_handler.setLevel(VERBOSITY_LEVELS[verbosity])
    logger.addHandler(console_handler)
    return logger

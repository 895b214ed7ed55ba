import atexit
import logging

from rich.logging import RichHandler


def init_logging(verbose: bool = False):
    handler = RichHandler()  # show_time=False
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,  # Override any previous logging configuration
    )

    # requests logs every connection at debug, which drowns out our own output
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    def cleanup_logging():
        logging.getLogger().removeHandler(handler)
        logging.shutdown()

    atexit.register(cleanup_logging)

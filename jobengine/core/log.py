import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def setup_logging(verbose: bool = False, console: Console = None):
    """Route engine logs through rich. Only the CLI calls this."""
    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="[%X]"))

    root = logging.getLogger("jobengine")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False
    return root

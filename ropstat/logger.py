import logging
import os

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

ropstat_theme = Theme(
    {
        "info": "cyan",
        "warning": "purple4",
        "danger": "bold red",
        "gadget": "bold green",
        "binary": "bold",
    }
)
console = Console(
    log_time=False,
    log_path=False,
    theme=ropstat_theme,
    color_system="256",
    highlight=True,
    record=True,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            markup=True,
            show_path=False,
            enable_link_path=False,
        )
    ],
)
LOG = logging.getLogger("ropstat")

DEBUG = logging.DEBUG

# Either variable turns on per-gadget tracing
if "debug" in (os.getenv("ROPSTAT_DEBUG_MODE"), os.getenv("SCAN_DEBUG_MODE")):
    LOG.setLevel(DEBUG)

# Silence chatty third-party loggers (lief, ar) that share the root handler
for log_name, log_obj in logging.Logger.manager.loggerDict.items():
    if not log_name.startswith("ropstat") and isinstance(log_obj, logging.Logger):
        log_obj.disabled = True


def set_quiet(quiet: bool) -> None:
    """Mutes or restores the ropstat logger."""
    LOG.disabled = quiet

import logging
import os
from datetime import datetime
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger once: console handler always, daily file
    handler when `log_dir` is given. Module loggers (logging.getLogger("refresher"),
    ...) inherit from it.
    """
    root = logging.getLogger()

    # Avoid adding handlers multiple times (uvicorn reload, tests)
    if getattr(root, "_marketfeed_configured", False):
        root.setLevel(level.upper())
        return root

    root.setLevel(level.upper())
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.join(log_dir, f"marketfeed_{datetime.now().strftime('%Y%m%d')}.log")
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.info("Logging to file: %s", path)

    root._marketfeed_configured = True
    return root

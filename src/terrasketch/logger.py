import logging
import sys
import os
from datetime import datetime
from typing import Optional


def setup_logger(log_dir: Optional[str] = "logs", log_name: str = "terrasketch",
                 level: int = logging.INFO) -> logging.Logger:
    """
    Configures the root logger for a pipeline run.

    Handlers:
    1. A timestamped file in log_dir (skipped when log_dir is None).
    2. The console (standard output), messages only.

    Library modules never call this; they only do logging.getLogger(__name__).
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    # Repeated CLI invocations in one process must not stack handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    filename = None
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = os.path.join(log_dir, f"{log_name}_{timestamp}.log")

        # --- File Handler (Detailed) ---
        file_handler = logging.FileHandler(filename, mode='w')
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logger.addHandler(file_handler)

    # --- Console Handler (Clean) ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    logger.addHandler(console_handler)

    if filename:
        logger.info(f"Logging initialized. Writing to: {filename}")
    else:
        logger.info("Logging initialized (console only).")
    return logger

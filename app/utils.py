import logging
import os
from typing import Optional

import psutil

MASK = "••••••••"


def mask_api_key(key: Optional[str]) -> str:
    """
    Returns a display-safe form of an API key: first 4 and last 4 characters
    around a fixed mask. Keys of 8 characters or fewer are fully masked.
    """
    if not key:
        return ""
    if len(key) <= 8:
        return MASK
    return f"{key[:4]}{MASK}{key[-4:]}"


def is_masked(value: Optional[str]) -> bool:
    return bool(value) and MASK in value


def log_memory_usage(context: str = ""):
    """
    Logs current memory usage (RSS) for the current process.
    Args:
        context (str): Optional description of where this log is called.
    """
    try:
        process = psutil.Process(os.getpid())
        mem = process.memory_info().rss / (1024 * 1024)  # in MB
        logging.getLogger("storybook-app").info(f"[MEMORY] {context} | RSS: {mem:.2f} MB")
    except psutil.Error as e:
        logging.getLogger("storybook-app").error(f"Error logging memory usage: {e}")

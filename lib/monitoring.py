import logging
import os
from typing import Any

def flag_enabled(flag: str) -> bool:
    """True when ENABLE_<FLAG>_LOGS (or the NEXT_PUBLIC_ variant) is 'true'."""
    name = f"ENABLE_{flag.upper()}_LOGS"
    value = os.getenv(name) or os.getenv(f"NEXT_PUBLIC_{name}") or ''
    return value.lower() == 'true'

class FlaggedLogger:
    """Verbose per-subsystem logging that stays silent unless its flag is set.

    The flag is re-read on every call so it can be toggled without a restart.
    """

    def __init__(self, flag: str, prefix: str, logger: logging.Logger = None):
        self.flag = flag
        self.prefix = prefix
        self.logger = logger or logging.getLogger(f"verbose.{flag.lower()}")

    @property
    def enabled(self) -> bool:
        return flag_enabled(self.flag)

    def log(self, message: str, *details: Any) -> None:
        if not self.enabled:
            return
        if details:
            message = f"{message} " + " ".join(str(d) for d in details)
        self.logger.info(f"[{self.prefix}] {message}")

    def error(self, message: str, *details: Any) -> None:
        if not self.enabled:
            return
        if details:
            message = f"{message} " + " ".join(str(d) for d in details)
        self.logger.error(f"[{self.prefix}] {message}")

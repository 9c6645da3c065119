"""
Logging setup for the control plane processes.

Log lines go to stdout, plus ``$LOG_DIR/vpc-control-plane.log`` when LOG_DIR
is set. Structured fields are carried by ``ContextLogger`` and rendered as a
``key=value`` suffix so that one cycle's lines can be grepped by subnet,
account, ENI or task.
"""

import logging
import os
import sys
from typing import Any, Dict, MutableMapping, Optional, Tuple

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]

    log_dir = os.getenv("LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "vpc-control-plane.log")))

    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class ContextLogger(logging.LoggerAdapter):
    """
    LoggerAdapter carrying structured fields.

    ``with_fields`` returns a new adapter, so context can be narrowed as a
    cycle progresses (subnet, then ENI) without mutating the parent.
    """

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    def with_fields(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra)
        merged.update(fields)
        return ContextLogger(self.logger, merged)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        if self.extra:
            suffix = " ".join(f"{k}={v}" for k, v in self.extra.items())
            msg = f"{msg} [{suffix}]"
            kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **fields: Any) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), fields)

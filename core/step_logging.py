# core/step_logging.py
"""
Tagged step logging used by request handlers and tasks
"""

import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger('platform.steps')


def log_step(tag: str, step: str, details: Optional[Dict[str, Any]] = None, level: int = logging.INFO) -> None:
    """Emit ``[TAG] step - {json details}``"""
    message = f"[{tag}] {step}"
    if details:
        message = f"{message} - {json.dumps(details, default=str)}"
    logger.log(level, message)

"""
Client configuration, stored as JSON in ~/.phantom/config.json.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from phantom_chat.outbox import DEFAULT_SEND_TIMEOUT_S
from phantom_chat.transport.http import DEFAULT_NODE_URL
from phantom_chat.typing_state import DEFAULT_EXPIRY_CHECK_S, DEFAULT_IDLE_DELAY_S, DEFAULT_STALE_AFTER_S

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".phantom"
CONFIG_FILE = CONFIG_DIR / "config.json"


class ChatConfig(BaseModel):
    node_url: str = DEFAULT_NODE_URL
    db_path: str = str(CONFIG_DIR / "phantom_chat.db")
    ready_timeout_s: float = 15.0
    send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S
    typing_idle_s: float = DEFAULT_IDLE_DELAY_S
    typing_expiry_check_s: float = DEFAULT_EXPIRY_CHECK_S
    typing_stale_after_s: float = DEFAULT_STALE_AFTER_S


def load_config(path: Optional[Path] = None) -> ChatConfig:
    path = path or CONFIG_FILE
    try:
        return ChatConfig.model_validate(json.loads(path.read_text()))
    except FileNotFoundError:
        return ChatConfig()
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Ignoring invalid config at {path}: {e}")
        return ChatConfig()


def save_config(config: ChatConfig, path: Optional[Path] = None) -> None:
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))

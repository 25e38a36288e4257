from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .composer import DEFAULT_QUIET_S
from .push_channel import DEFAULT_RECONNECT_DELAY_S
from .send_pipeline import DEFAULT_SEND_TIMEOUT_S
from .typing_state import DEFAULT_TYPING_EXPIRY_S


@dataclass
class ClientConfig:
    base_url: str
    user_id: str
    display_name: Optional[str] = None
    reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S
    send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S
    typing_quiet_s: float = DEFAULT_QUIET_S
    typing_expiry_s: float = DEFAULT_TYPING_EXPIRY_S
    poll_interval_s: float = 10.0
    history_page_size: int = 50
    preferences_path: Optional[Path] = None

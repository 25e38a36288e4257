"""Persist per-user client preferences."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

DEFAULT_PREFERENCES_PATH = Path.home() / ".chat_client" / "preferences.json"


@dataclass
class Preferences:
    sound_enabled: bool = True


def _atomic_write_json(path: Path, payload: dict) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_preferences(path: Path | str = DEFAULT_PREFERENCES_PATH) -> Preferences:
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Preferences()
    except (json.JSONDecodeError, ValueError):
        return Preferences()

    if not isinstance(data, dict):
        return Preferences()
    sound_enabled = data.get("sound_enabled", True)
    return Preferences(sound_enabled=sound_enabled if isinstance(sound_enabled, bool) else True)


def save_preferences(preferences: Preferences, path: Path | str = DEFAULT_PREFERENCES_PATH) -> None:
    _atomic_write_json(Path(path), asdict(preferences))

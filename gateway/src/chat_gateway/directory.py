from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List


@dataclass(frozen=True)
class User:
    id: str
    name: str
    email: str = ""
    role: str = "EMPLOYEE"

    def to_wire(self) -> dict[str, str]:
        return asdict(self)


class UserDirectory:
    """Known users; the gateway treats a user id as its bearer credential."""

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._users: Dict[str, User] = {}
        for user in users:
            self.add(user)

    def add(self, user: User) -> None:
        if not user.id:
            raise ValueError("user id required")
        self._users[user.id] = user

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def ids(self) -> List[str]:
        return list(self._users)

    def users(self) -> List[User]:
        return sorted(self._users.values(), key=lambda user: (user.name.lower(), user.id))

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def __len__(self) -> int:
        return len(self._users)


def load_users(path: Path | str) -> list[User]:
    """Load a JSON array of ``{"id", "name", "email", "role"}`` objects."""

    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("users file must contain a JSON array")
    users: list[User] = []
    for entry in data:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise ValueError("each user needs a string id")
        users.append(
            User(
                id=entry["id"],
                name=str(entry.get("name") or entry["id"]),
                email=str(entry.get("email") or ""),
                role=str(entry.get("role") or "EMPLOYEE"),
            )
        )
    return users

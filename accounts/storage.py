from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from dataclasses import asdict, fields
from .models import Principal
import json, os, tempfile, threading

# Get valid field names from Principal dataclass
_PRINCIPAL_FIELDS = {f.name for f in fields(Principal)}

def _make_principal(data: Dict[str, Any]) -> Principal:
    """Create a Principal from dict, filtering out unknown fields for backwards compatibility."""
    filtered = {k: v for k, v in data.items() if k in _PRINCIPAL_FIELDS}
    return Principal(**filtered)

class IStorage(ABC):
    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[Principal]: ...
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> Optional[Principal]: ...
    @abstractmethod
    def save_user(self, user: Principal) -> None: ...
    @abstractmethod
    def update_user(self, user: Principal) -> None: ...
    @abstractmethod
    def get_all_users(self) -> List[Principal]: ...

class JSONStorage(IStorage):
    def __init__(self, path: str = "users.json"):
        self.path = str(path)
        self._lock = threading.Lock()
        if not os.path.exists(self.path):
            self._save({"users": []})

    def _load(self) -> Dict[str, Any]:
        with open(self.path, "r") as f:
            return json.load(f)

    def _save(self, data: Dict[str, Any]) -> None:
        # write-then-rename so readers never see a half written file
        fd, tmp = tempfile.mkstemp(prefix="users.", suffix=".tmp", dir=os.path.dirname(self.path) or ".")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def get_user_by_username(self, username: str) -> Optional[Principal]:
        data = self._load()
        for u in data["users"]:
            if u["username"] == username:
                return _make_principal(u)
        return None

    def get_user_by_id(self, user_id: str) -> Optional[Principal]:
        data = self._load()
        for u in data["users"]:
            if u["user_id"] == user_id:
                return _make_principal(u)
        return None

    def save_user(self, user: Principal) -> None:
        with self._lock:
            data = self._load()
            if any(u["username"] == user.username for u in data["users"]):
                raise ValueError("username already exists")
            data["users"].append(asdict(user))
            self._save(data)

    def update_user(self, user: Principal) -> None:
        with self._lock:
            data = self._load()
            for i, u in enumerate(data["users"]):
                if u["user_id"] == user.user_id:
                    data["users"][i] = asdict(user)
                    self._save(data)
                    return
            raise KeyError(f"unknown user {user.user_id}")

    def get_all_users(self) -> List[Principal]:
        data = self._load()
        return [_make_principal(u) for u in data["users"]]

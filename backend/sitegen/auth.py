"""
Flat-file user store: one `username,password` line per user.

Plain-text keyed lookup, nothing more. Not a security model.
"""

import os
import threading


class UserStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        users = {}
        if not os.path.exists(self.path):
            return users
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                username, _, password = line.partition(",")
                if username and password:
                    users[username] = password
        return users

    def _write(self, users: dict[str, str]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("\n".join(f"{u},{p}" for u, p in users.items()))

    def register(self, username: str, password: str) -> bool:
        """False when a field is empty, contains a separator, or the name is taken."""
        if not _valid(username) or not _valid(password):
            return False
        with self._lock:
            users = self._read()
            if username in users:
                return False
            users[username] = password
            self._write(users)
        print(f"[auth] Registered {username} ({len(users)} users)")
        return True

    def verify(self, username: str, password: str) -> bool:
        if not username or not password:
            return False
        with self._lock:
            users = self._read()
        return users.get(username) == password

    def exists(self, username: str) -> bool:
        with self._lock:
            return username in self._read()


def _valid(value: str) -> bool:
    return bool(value) and "," not in value and "\n" not in value

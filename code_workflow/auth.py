import os
from dataclasses import dataclass
from typing import Callable


@dataclass
class Identity:
    user: str
    roles: set[str]


class AuthResolver:
    def __init__(self, role_lookup: Callable[[str], str]):
        self.role_lookup = role_lookup
        self.allow_dev_headers = os.environ.get("ALLOW_DEV_HEADERS", "true").lower() == "true"

    def resolve(self, headers) -> Identity:
        # Reverse proxies with integrated auth surface the user in these server vars.
        user = (
            os.environ.get("REMOTE_USER")
            or os.environ.get("LOGON_USER")
            or os.environ.get("AUTH_USER")
            or ""
        )
        if not user and self.allow_dev_headers:
            user = headers.get("X-Remote-User", "")
        user = user.strip().lower()

        if not user:
            return Identity(user="anonymous", roles=set())

        role = self.role_lookup(user)
        if self.allow_dev_headers and headers.get("X-User-Role"):
            role = headers.get("X-User-Role").strip()
        return Identity(user=user, roles={role})

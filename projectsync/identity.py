from __future__ import annotations

from dataclasses import dataclass

from .storage import KeyValueStore
from .utils import new_uid

CORS_TOKEN_KEY = "cors_token"
USERNAME_KEY = "username"
DEFAULT_USERNAME = "a user"


@dataclass(frozen=True)
class ClientIdentity:
    cors_token: str
    username: str


def ensure_client_identity(
    store: KeyValueStore, *, username: str | None = None
) -> ClientIdentity:
    """Load the origin-wide identity, creating it on first use.

    An explicit ``username`` replaces the stored one.
    """

    cors_token = store.fetch(CORS_TOKEN_KEY)
    if not cors_token:
        cors_token = store.set(CORS_TOKEN_KEY, new_uid().replace("-", "")[:12])
    stored_name = store.fetch(USERNAME_KEY)
    if username and username != stored_name:
        stored_name = store.set(USERNAME_KEY, username)
    elif not stored_name:
        stored_name = store.set(USERNAME_KEY, DEFAULT_USERNAME)
    return ClientIdentity(cors_token=cors_token, username=stored_name)

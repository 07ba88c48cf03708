"""Owner context: the opaque key that scopes lookup history."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

OwnerType = Literal["anonymous", "user"]

_UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


class InvalidClientIdError(ValueError):
    """Raised when a client token is missing or not a UUID v4."""


@dataclass(frozen=True)
class OwnerContext:
    type: OwnerType
    id: str


def resolve_owner(client_id: str | None) -> OwnerContext:
    """Map an inbound client token to an anonymous owner."""
    if not client_id or not _UUID_V4.fullmatch(client_id.strip()):
        raise InvalidClientIdError("Invalid or missing client id")
    return OwnerContext(type="anonymous", id=client_id.strip())


__all__ = ["OwnerContext", "OwnerType", "InvalidClientIdError", "resolve_owner"]

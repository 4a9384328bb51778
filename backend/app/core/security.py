from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

# Authentication happens in front of this service; the gateway forwards the
# authenticated user name in X-Actor for audit trails.
ACTOR_HEADER = "X-Actor"


@dataclass
class Principal:
    username: str = "system"


def get_principal(x_actor: str | None = Header(default=None, alias=ACTOR_HEADER)) -> Principal:
    return Principal(username=(x_actor or "").strip() or "system")

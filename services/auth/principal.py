"""Holder for the principal resolved by the external sign-in flow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Principal:
    """Opaque authenticated identity; `id` scopes remote persistence."""

    id: str
    email: Optional[str] = None


class PrincipalProvider:
    """Expose the currently signed-in principal, if any."""

    def __init__(self, principal: Optional[Principal] = None) -> None:
        self._principal = principal

    async def current(self) -> Optional[Principal]:
        return self._principal

    def sign_in(self, principal: Principal) -> None:
        self._principal = principal

    def sign_out(self) -> None:
        self._principal = None

# app/credentials.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from .errors import EmptyPoolError


@dataclass(frozen=True)
class Credential:
    index: int
    value: str

    def __repr__(self) -> str:
        # never print the raw key
        return f"Credential(index={self.index}, value='***')"


class CredentialPool:
    """
    Ordered, immutable list of interchangeable API keys for one provider.

    `get` wraps any integer index onto the list, so callers can advance an
    index freely without bounds checks.
    """

    def __init__(self, values: Iterable[str]):
        self._credentials: Tuple[Credential, ...] = tuple(
            Credential(index=i, value=v) for i, v in enumerate(values)
        )
        if not self._credentials:
            raise EmptyPoolError("no API credentials configured")

    @classmethod
    def from_csv(cls, raw: str) -> "CredentialPool":
        return cls(k.strip() for k in (raw or "").split(",") if k.strip())

    def size(self) -> int:
        return len(self._credentials)

    def get(self, index: int) -> Credential:
        return self._credentials[index % len(self._credentials)]

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return f"CredentialPool(size={self.size()})"

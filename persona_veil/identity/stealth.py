"""Stealth addresses: per-persona identifiers that cannot be linked across refreshes.

address = HMAC-SHA256(salt, public_key_hash || timestamp_ms || mix_factor)

The timestamp and mix factor only separate successive derivations in time.
Unlinkability rests on the salt staying secret and being replaced on every
refresh.
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Callable

from persona_veil.crypto import primitives
from persona_veil.errors import CryptoError
from persona_veil.models import Persona
from persona_veil.utils.timestamps import utcnow

SALT_BYTES = 16
_MAX_REFRESH_ATTEMPTS = 3


def _now_ms() -> int:
    return int(time.time() * 1000)


def derive_stealth_address(
    public_key_hash: str,
    salt: str,
    *,
    mix_factor: int,
    timestamp_ms: int | None = None,
) -> str:
    if not salt:
        raise CryptoError("Stealth address derivation requires a salt")
    ts = _now_ms() if timestamp_ms is None else timestamp_ms
    message = f"{public_key_hash}|{ts}|{mix_factor}"
    return primitives.hmac_digest(salt, message)


def new_salt() -> str:
    return primitives.random_hex(SALT_BYTES)


class StealthAddressEngine:
    def __init__(
        self,
        mix_factor: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.mix_factor = mix_factor
        self._clock = clock

    def derive(self, public_key_hash: str, salt: str) -> str:
        ts = int(self._clock().timestamp() * 1000)
        return derive_stealth_address(
            public_key_hash, salt, mix_factor=self.mix_factor, timestamp_ms=ts
        )

    def refresh(self, persona: Persona) -> Persona:
        """Return a copy of persona with a new salt and a new stealth address.

        The previous salt is dropped, so the old address cannot be recomputed
        from anything the new record holds.
        """
        old_address = persona.crypto.stealth_address
        for _ in range(_MAX_REFRESH_ATTEMPTS):
            salt = new_salt()
            address = self.derive(persona.crypto.public_key_hash, salt)
            if address != old_address:
                crypto = persona.crypto.model_copy(update={"salt": salt, "stealth_address": address})
                return persona.model_copy(update={"crypto": crypto, "updated_at": self._clock()})
        raise CryptoError("Stealth address refresh produced a repeated address")

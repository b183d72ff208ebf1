"""Builds the cryptographic material for a brand-new persona.

Nothing produced here is derived from the owner: each persona gets its own
key pair, salt and display name from fresh randomness, so two personas of the
same owner share no derivation input. Owner verification is the caller's job.
"""
from __future__ import annotations

import asyncio
import logging

from persona_veil.crypto import primitives
from persona_veil.errors import CryptoError
from persona_veil.identity.stealth import StealthAddressEngine, new_salt
from persona_veil.models import GeneratedIdentity, PrivateIdentity

_log = logging.getLogger(__name__)

PERSONA_ID_BYTES = 32

ADJECTIVES = (
    "Brave", "Curious", "Dynamic", "Energetic", "Fearless",
    "Graceful", "Honest", "Insightful", "Joyful", "Kind",
    "Luminous", "Mindful", "Noble", "Optimistic", "Peaceful",
    "Quiet", "Resilient", "Sincere", "Thoughtful", "Unique",
    "Vibrant", "Wise", "Zealous",
)

NOUNS = (
    "Aurora", "Breeze", "Comet", "Dove", "Eagle",
    "Falcon", "Galaxy", "Horizon", "Iris", "Journey",
    "Kite", "Lotus", "Meadow", "Nova", "Ocean",
    "Phoenix", "Quasar", "River", "Star", "Tiger",
    "Universe", "Voice", "Wave", "Zenith",
)


def generate_persona_id() -> str:
    """256-bit random hex id, the only external handle on a persona."""
    return primitives.random_hex(PERSONA_ID_BYTES)


def generate_display_name() -> str:
    adjective = primitives.random_choice(ADJECTIVES)
    noun = primitives.random_choice(NOUNS)
    return f"{adjective}{noun}{primitives.random_below(1000)}"


class PersonaIdentityGenerator:
    def __init__(self, stealth: StealthAddressEngine, *, key_size: int = 2048,
                 timeout_seconds: float = 10.0) -> None:
        self.stealth = stealth
        self.key_size = key_size
        self.timeout_seconds = timeout_seconds

    def generate(self) -> GeneratedIdentity:
        key_pair = primitives.generate_key_pair(self.key_size)
        salt = new_salt()
        public_key_hash = primitives.hash_bytes(key_pair.public_pem)
        return GeneratedIdentity(
            public_key_hash=public_key_hash,
            stealth_address=self.stealth.derive(public_key_hash, salt),
            salt=salt,
            display_name=generate_display_name(),
            private_identity=PrivateIdentity(private_key=key_pair.private_pem, salt=salt),
        )

    async def generate_async(self) -> GeneratedIdentity:
        """generate() on a worker thread, bounded by timeout_seconds."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.generate), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            _log.error("persona identity generation timed out after %.1fs", self.timeout_seconds)
            raise CryptoError("Identity generation timed out") from exc

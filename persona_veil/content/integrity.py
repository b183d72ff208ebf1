"""Tamper evidence for anonymous content.

The hash covers canonical JSON of the content and its media URLs. A signature
is only produced when the client hands over its private key for the duration
of the request; the key is used once and dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from persona_veil.crypto import primitives
from persona_veil.errors import CryptoError, IntegrityFailure, ValidationError
from persona_veil.models import Integrity

_log = logging.getLogger(__name__)


def integrity_payload(content: str | None, media_urls: Sequence[str]) -> bytes:
    return primitives.canonical_json_bytes({"content": content or "", "media_urls": list(media_urls)})


@dataclass(frozen=True)
class IntegrityCheck:
    ok: bool
    reason: str = ""


class ContentIntegrityService:
    def seal(
        self,
        payload: bytes,
        *,
        public_key_hash: str | None = None,
        private_key_pem: str | None = None,
        signature: str | None = None,
        public_key_pem: str | None = None,
    ) -> Integrity:
        """Hash payload and, when key material is supplied, attach a signature.

        Either private_key_pem (signed here) or a ready-made signature plus
        public_key_pem. The public key must belong to the persona.
        """
        content_hash = primitives.hash_bytes(payload)
        if private_key_pem is None and signature is None:
            return Integrity(content_hash=content_hash)

        try:
            if private_key_pem is not None:
                public_key_pem = primitives.public_pem_from_private(private_key_pem)
                signature = primitives.sign(payload, private_key_pem)
            elif public_key_pem is None:
                raise ValidationError("A signature needs the matching public key")

            if public_key_hash is not None and not primitives.constant_time_equals(
                primitives.hash_bytes(public_key_pem), public_key_hash
            ):
                raise ValidationError("Signing key does not belong to this persona")
            if not primitives.verify(payload, signature, public_key_pem):
                raise ValidationError("Signature does not match content")
        except CryptoError as exc:
            # client-supplied key material
            raise ValidationError("Invalid signing key") from exc
        return Integrity(content_hash=content_hash, signature=signature, public_key_pem=public_key_pem)

    def verify(
        self,
        payload: bytes,
        integrity: Integrity,
        public_key_hash: str | None = None,
    ) -> IntegrityCheck:
        if not primitives.constant_time_equals(primitives.hash_bytes(payload), integrity.content_hash):
            return IntegrityCheck(False, "content hash mismatch")
        if integrity.signature is None or integrity.public_key_pem is None:
            return IntegrityCheck(True)
        if public_key_hash is not None and not primitives.constant_time_equals(
            primitives.hash_bytes(integrity.public_key_pem), public_key_hash
        ):
            return IntegrityCheck(False, "public key does not belong to author")
        try:
            valid = primitives.verify(payload, integrity.signature, integrity.public_key_pem)
        except CryptoError:
            _log.warning("stored public key could not be loaded during integrity check")
            return IntegrityCheck(False, "unreadable public key")
        return IntegrityCheck(True) if valid else IntegrityCheck(False, "signature mismatch")

    def require_intact(self, payload: bytes, integrity: Integrity,
                       public_key_hash: str | None = None) -> None:
        check = self.verify(payload, integrity, public_key_hash)
        if not check.ok:
            raise IntegrityFailure(check.reason)

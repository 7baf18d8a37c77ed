"""Integrity check: per-item checksums and an optional bundle signature.

Checksums are SHA-256 hex digests of file content and migration SQL. The
signature is RSA PKCS#1 v1.5 with SHA-256, taken over the SHA-256 digest of
the bundle's canonical JSON (sorted keys, no whitespace) with the
``signature`` block removed. Signatures older than seven days are refused.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from wsapply.models.bundle import Bundle
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome

logger = logging.getLogger(__name__)

NAME = "SignatureCheck"
ALGORITHM = "RSA-SHA256"
MAX_SIGNATURE_AGE = timedelta(days=7)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def _digest(payload: Mapping[str, Any]) -> bytes:
    return hashlib.sha256(canonical_json(payload)).digest()


def load_public_key(pem: str | bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM.

    Raises:
        ValueError: If the PEM is malformed or the key is not RSA.
    """
    if isinstance(pem, str):
        pem = pem.encode("utf-8")
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"Bundle signatures need an RSA public key, got {type(key).__name__}")
    return key


def sign_payload(
    payload: Mapping[str, Any],
    private_key: rsa.RSAPrivateKey,
    key_id: str = "",
    signed_at: datetime | None = None,
) -> dict[str, Any]:
    """Return a copy of a bundle document carrying a ``signature`` block."""
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    value = private_key.sign(_digest(unsigned), padding.PKCS1v15(), hashes.SHA256())
    signed_at = signed_at or datetime.now(timezone.utc)
    return {
        **unsigned,
        "signature": {
            "algorithm": ALGORITHM,
            "value": base64.b64encode(value).decode("ascii"),
            "signed_at": signed_at.isoformat(),
            "key_id": key_id,
        },
    }


def checksum_mismatches(bundle: Bundle) -> tuple[list[dict[str, str]], int]:
    """Compare declared checksums with the content actually shipped.

    Returns the mismatches and the number of checksums checked.
    """
    declared: list[tuple[str, str, str]] = []
    for change in bundle.all_file_changes():
        if change.checksum and change.writes_content:
            declared.append((change.path, change.checksum, change.content or ""))
    for m in bundle.migrations:
        if m.checksum_forward:
            declared.append((f"migration:{m.id}/sql_forward", m.checksum_forward, m.sql_forward))
        if m.checksum_reverse:
            declared.append((f"migration:{m.id}/sql_reverse", m.checksum_reverse, m.sql_reverse))

    mismatches = []
    for target, expected, content in declared:
        actual = sha256_hex(content)
        if actual != expected.strip().lower():
            mismatches.append({"target": target, "expected": expected, "actual": actual})
    return mismatches, len(declared)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class BundleVerifier:
    """Verifies bundle checksums and, when a key is configured, its signature.

    Without a public key only checksums are checked, unless
    ``require_signature`` is set, in which case every bundle fails.
    """

    def __init__(
        self,
        public_key: rsa.RSAPublicKey | str | bytes | None = None,
        *,
        require_signature: bool = False,
        max_age: timedelta = MAX_SIGNATURE_AGE,
    ) -> None:
        if isinstance(public_key, (str, bytes)):
            public_key = load_public_key(public_key)
        self.public_key = public_key
        self.require_signature = require_signature
        self.max_age = max_age

    def signature_problems(self, bundle: Bundle) -> list[str]:
        sig = bundle.signature
        if sig is None:
            if self.require_signature:
                return ["Bundle is not signed; unsigned bundles are not allowed"]
            return []
        if self.public_key is None:
            if self.require_signature:
                return ["Bundle is signed but no public key is configured"]
            logger.debug("No public key configured; signature of %s not verified", bundle.id)
            return []

        algorithm = sig.get("algorithm")
        if algorithm != ALGORITHM:
            return [f"Unsupported signature algorithm: {algorithm}"]

        signed_at = _parse_timestamp(sig.get("signed_at") or sig.get("timestamp"))
        if signed_at is None:
            return ["Signature has no valid timestamp"]
        age = datetime.now(timezone.utc) - signed_at
        if age > self.max_age:
            return [f"Signature is too old: {age.days} day(s)"]

        try:
            value = base64.b64decode(sig.get("value") or "", validate=True)
        except (binascii.Error, ValueError):
            return ["Signature value is not valid base64"]

        payload = bundle.signed_payload
        if payload is None:
            payload = {k: v for k, v in bundle.to_dict().items() if k != "signature"}
        try:
            self.public_key.verify(value, _digest(payload), padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            logger.warning("Invalid signature on bundle %s (key %s)", bundle.id, sig.get("key_id"))
            return ["Bundle signature is invalid"]
        return []

    def check(self, bundle: Bundle) -> CheckOutcome:
        mismatches, checked = checksum_mismatches(bundle)
        problems = self.signature_problems(bundle)
        verified = bundle.signature is not None and self.public_key is not None and not problems

        if problems or mismatches:
            parts = list(problems)
            if mismatches:
                parts.append(f"{len(mismatches)} checksum mismatch(es)")
            return CheckOutcome.failure(
                "; ".join(parts),
                signature_problems=problems,
                checksum_mismatches=mismatches,
                checksums_checked=checked,
                signature_verified=False,
            )
        message = "Signature and checksums verified" if verified else f"{checked} checksum(s) verified"
        return CheckOutcome.success(message, checksums_checked=checked, signature_verified=verified)


def signature_check(
    public_key: rsa.RSAPublicKey | str | bytes | None = None,
    *,
    require_signature: bool = False,
    max_age: timedelta = MAX_SIGNATURE_AGE,
) -> Check:
    verifier = BundleVerifier(public_key, require_signature=require_signature, max_age=max_age)
    return Check(name=NAME, level=CheckLevel.BLOCKING, run=verifier.check)

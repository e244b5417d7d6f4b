"""Ed25519-signed ledger exports."""

from __future__ import annotations

import base64
import time
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from topokeeper.audit.decision_trace import canonical_json_bytes
from topokeeper.audit.ledger import DecisionLedger

SCHEMA_VERSION = "ledger_export.v1"


def public_key_b64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


def write_private_key(path: Path, private_key: Ed25519PrivateKey) -> Path:
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(pem)
    path.chmod(0o600)
    return path


def load_private_key(path: Path) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError(f"not an Ed25519 private key: {path}")
    return key


def _payload(export: dict) -> dict:
    return {k: v for k, v in export.items() if k != "signature"}


def build_ledger_export(
    ledger: DecisionLedger,
    private_key: Ed25519PrivateKey,
    *,
    created_at: int | None = None,
) -> dict:
    payload = {
        "schema_version": SCHEMA_VERSION,
        "created_at": int(time.time()) if created_at is None else int(created_at),
        "public_key": public_key_b64(private_key),
        "statistics": ledger.get_statistics(),
        "decisions": [d.to_dict() for d in ledger.get_decisions(limit=None)],
    }
    signature = private_key.sign(canonical_json_bytes(payload))
    return {**payload, "signature": base64.b64encode(signature).decode("ascii")}


def verify_ledger_export(export: dict, trusted_public_key_b64: str | None = None) -> tuple[bool, str]:
    """Return (ok, reason). Without a trusted key the embedded key is used."""
    if not isinstance(export, dict) or export.get("schema_version") != SCHEMA_VERSION:
        return False, "schema_mismatch"
    key_b64 = trusted_public_key_b64 or export.get("public_key")
    signature_b64 = export.get("signature")
    if not isinstance(key_b64, str) or not isinstance(signature_b64, str):
        return False, "missing_signature"
    try:
        public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(key_b64, validate=True))
        signature = base64.b64decode(signature_b64, validate=True)
    except ValueError:
        return False, "malformed_key_or_signature"
    try:
        public_key.verify(signature, canonical_json_bytes(_payload(export)))
    except InvalidSignature:
        return False, "signature_invalid"
    return True, "ok"

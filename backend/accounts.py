"""
Caller Identity — RSA-signed call envelopes

Every mutating call arrives as an envelope:

    {
      "public_key": str,   # caller's RSA public key (PEM)
      "payload": {
        "operation": str,  # e.g. "castVote"
        "args":      dict,
        "value":     int,  # payment attached to the call
        "nonce":     int   # caller's next nonce, prevents replays
      },
      "signature": str     # base64 PKCS#1 v1.5 signature over the payload
    }

The caller's identity is derived from the public key, so a valid signature
authenticates the identity the contract sees.
"""

import base64
import json

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15


KEY_SIZE = 2048  # bits
ENVELOPE_FIELDS = ("public_key", "payload", "signature")
PAYLOAD_FIELDS = ("operation", "args", "value", "nonce")
# Largest value each numeric payload field may carry
PAYLOAD_LIMITS = {"value": 2**128 - 1, "nonce": 2**63 - 1}


def generate_keypair() -> tuple:
    """Generate an RSA keypair for a caller."""
    key = RSA.generate(KEY_SIZE)
    private_key = key.export_key().decode()
    public_key = key.publickey().export_key().decode()
    return private_key, public_key


def account_id(public_key_pem: str) -> str:
    """Stable account identifier: 0x + 40 hex chars of SHA-256(DER key)."""
    der = RSA.import_key(public_key_pem).publickey().export_key(format="DER")
    return "0x" + SHA256.new(der).hexdigest()[:40]


def canonical_payload(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def sign_call(payload: dict, private_key_pem: str) -> str:
    """Client side: sign a call payload, returning base64."""
    key = RSA.import_key(private_key_pem)
    digest = SHA256.new(canonical_payload(payload))
    return base64.b64encode(pkcs1_15.new(key).sign(digest)).decode()


def verify_call(payload: dict, signature_b64: str, public_key_pem: str) -> bool:
    try:
        key = RSA.import_key(public_key_pem)
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValueError, IndexError, TypeError):
        return False
    digest = SHA256.new(canonical_payload(payload))
    try:
        pkcs1_15.new(key).verify(digest, signature)
        return True
    except (ValueError, TypeError):
        return False


def make_envelope(operation: str, args: dict, nonce: int, private_key_pem: str, public_key_pem: str, value: int = 0) -> dict:
    """Client side: build and sign a complete envelope."""
    payload = {"operation": operation, "args": args, "value": value, "nonce": nonce}
    return {
        "public_key": public_key_pem,
        "payload": payload,
        "signature": sign_call(payload, private_key_pem),
    }


def parse_envelope(data) -> tuple:
    """
    Validate an envelope's shape.

    Returns (public_key, payload, signature) or raises ValueError.
    """
    if not isinstance(data, dict):
        raise ValueError("Envelope must be a JSON object")
    missing = [f for f in ENVELOPE_FIELDS if f not in data]
    if missing:
        raise ValueError(f"Envelope is missing {', '.join(missing)}")

    public_key, payload, signature = data["public_key"], data["payload"], data["signature"]
    if not isinstance(public_key, str) or not isinstance(signature, str):
        raise ValueError("public_key and signature must be strings")
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    missing = [f for f in PAYLOAD_FIELDS if f not in payload]
    if missing:
        raise ValueError(f"Payload is missing {', '.join(missing)}")
    if not isinstance(payload["args"], dict):
        raise ValueError("payload.args must be an object")
    for field, limit in PAYLOAD_LIMITS.items():
        v = payload[field]
        if isinstance(v, bool) or not isinstance(v, int) or v < 0:
            raise ValueError(f"payload.{field} must be a non-negative integer")
        if v > limit:
            raise ValueError(f"payload.{field} exceeds {limit}")
    return public_key, payload, signature

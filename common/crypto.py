from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import math
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def md5_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.strip().encode("utf-8")
    return hashlib.md5(data).hexdigest()


def password_digest(password: str) -> bytes:
    return hashlib.sha256(password.encode("utf-8")).digest()


def digest_matches(candidate: bytes, expected: bytes) -> bool:
    return hmac.compare_digest(candidate, expected)


def _canonical_number(value: int | float) -> str:
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def canonical_string(value: Any) -> str:
    """Stable text form of a JSON value.

    Mappings are rendered ``k=v|k=v`` with sorted keys, sequences as
    comma-joined items, and integral floats collapse to their integer form,
    so ``{"a": 1.0, "b": 2}`` and ``{"b": 2, "a": 1}`` render identically.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _canonical_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return "|".join(f"{k}={canonical_string(value[k])}" for k in sorted(value, key=str))
    if isinstance(value, (list, tuple)):
        return ",".join(canonical_string(v) for v in value)
    return str(value)


def canonical_hash(value: Any) -> str:
    return md5_hex(canonical_string(value).encode("utf-8"))


def subset_for_hash(service: dict[str, Any]) -> dict[str, Any]:
    """Fields of a service the panel compares when aggregating forward status."""
    out: dict[str, Any] = {}
    name = service.get("name")
    if isinstance(name, str) and name:
        out["name"] = name
    else:
        name = ""
    for section in ("listener", "handler"):
        block = service.get(section)
        if isinstance(block, dict) and isinstance(block.get("type"), str) and block["type"]:
            out[section] = {"type": block["type"]}
    # Mid-hop forwarders point at unpredictable next-hop ports.
    forwarder = service.get("forwarder")
    if "_mid_" not in name and isinstance(forwarder, dict) and isinstance(forwarder.get("nodes"), list):
        addrs = [
            node["addr"]
            for node in forwarder["nodes"]
            if isinstance(node, dict) and isinstance(node.get("addr"), str) and node["addr"]
        ]
        out["forwarder"] = {"addrs": sorted(addrs)}
    metadata = service.get("metadata")
    if isinstance(metadata, dict) and isinstance(metadata.get("interface"), str) and metadata["interface"]:
        out["metadata"] = {"interface": metadata["interface"]}
    return out


def service_hash(service: dict[str, Any]) -> str:
    return canonical_hash(subset_for_hash(service))


def _normalize_json(value: Any) -> Any:
    """Fold integral floats to ints; bools and strings keep their type."""
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value.is_integer() else value
    if isinstance(value, dict):
        return {str(k): _normalize_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """Type-preserving canonical form used to decide whether an object changed.

    Unlike ``canonical_string``, ``"100"`` and ``100``, ``["a", "b"]`` and
    ``"a,b"``, and ``true`` and ``1`` all stay distinct.
    """
    return json.dumps(_normalize_json(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def is_json_subset(want: Any, have: Any) -> bool:
    """True when every field in ``want`` is present and equal in ``have``."""
    if isinstance(want, dict):
        if not isinstance(have, dict):
            return False
        return all(is_json_subset(v, have.get(k)) for k, v in want.items())
    if isinstance(want, (list, tuple)):
        if not isinstance(have, (list, tuple)) or len(want) != len(have):
            return False
        return all(is_json_subset(w, h) for w, h in zip(want, have))
    if isinstance(want, bool) or isinstance(have, bool):
        return isinstance(want, bool) and isinstance(have, bool) and want == have
    return _normalize_json(want) == _normalize_json(have)


def generate_self_signed_cert(common_name: str, days: int = 3650, key_size: int = 2048) -> tuple[bytes, bytes]:
    """Return (cert_pem, key_pem) for a self-signed RSA server certificate."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(hours=1))
        .not_valid_after(now + dt.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem

"""PKCS#12 keystore and truststore generation from a serving certificate.

The cluster issues a PEM certificate and key into a secret named after the
service. The runtime expects PKCS#12 stores, so they are converted here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    load_pem_private_key,
    pkcs12,
)

KEY_ALIAS = b"teiid"


class KeystoreError(Exception):
    """Raised when the certificate material cannot be converted."""

    pass


@dataclass(frozen=True)
class KeystoreBundle:
    keystore: bytes
    truststore: bytes
    password: str


class KeystoreBuilder(Protocol):
    def build(self, cert_pem: bytes, key_pem: bytes, password: str) -> KeystoreBundle: ...


class Pkcs12KeystoreBuilder:
    """Builds PKCS#12 stores with the cryptography package."""

    def build(self, cert_pem: bytes, key_pem: bytes, password: str) -> KeystoreBundle:
        try:
            certs = x509.load_pem_x509_certificates(cert_pem)
            key = load_pem_private_key(key_pem, password=None)
        except ValueError as e:
            raise KeystoreError(f"Invalid serving certificate material: {e}") from e

        if not certs:
            raise KeystoreError("Serving certificate secret contains no certificate")

        leaf, chain = certs[0], certs[1:]
        encryption = BestAvailableEncryption(password.encode("utf-8"))
        keystore = pkcs12.serialize_key_and_certificates(
            name=KEY_ALIAS,
            key=key,  # type: ignore[arg-type]
            cert=leaf,
            cas=chain or None,
            encryption_algorithm=encryption,
        )
        truststore = pkcs12.serialize_key_and_certificates(
            name=None,
            key=None,
            cert=None,
            cas=certs,
            encryption_algorithm=encryption,
        )
        return KeystoreBundle(keystore=keystore, truststore=truststore, password=password)

"""
TLS credential handling.

The listener consumes an in-memory ``CredentialBundle``; reading keystores or
PEM files from disk is left to the bootstrap helpers at the bottom of this
module.
"""

import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pydantic import BaseModel, ConfigDict, Field

from service_proxy.errors import TlsCredentialError

logger = logging.getLogger("uvicorn.error")


class CredentialBundle(BaseModel):
    """Certificate chain and private key, both PEM encoded, plus an optional key password."""

    model_config = ConfigDict(frozen=True)

    cert_chain: bytes
    private_key: bytes = Field(repr=False)
    password: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_pem_files(
        cls, cert_path: str, key_path: str, password: Optional[str] = None
    ) -> "CredentialBundle":
        try:
            return cls(
                cert_chain=Path(cert_path).read_bytes(),
                private_key=Path(key_path).read_bytes(),
                password=password,
            )
        except OSError as e:
            raise TlsCredentialError(f"Cannot read TLS credentials: {e}")

    @classmethod
    def from_pkcs12(
        cls,
        keystore_path: str,
        keystore_password: Optional[str],
        key_password: Optional[str] = None,
    ) -> "CredentialBundle":
        """
        Load a PKCS#12 keystore and convert it to PEM.

        The key is re-encrypted with key_password when one is given, otherwise
        it is kept unencrypted in memory.
        """
        try:
            data = Path(keystore_path).read_bytes()
        except OSError as e:
            raise TlsCredentialError(f"Cannot read keystore {keystore_path}: {e}")
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(
                data, keystore_password.encode() if keystore_password else None
            )
        except ValueError as e:
            raise TlsCredentialError(f"Cannot open keystore {keystore_path}: {e}")
        if key is None or cert is None:
            raise TlsCredentialError(
                f"Keystore {keystore_path} does not contain a private key and certificate"
            )

        chain = cert.public_bytes(serialization.Encoding.PEM) + b"".join(
            extra.public_bytes(serialization.Encoding.PEM) for extra in additional or []
        )
        if key_password:
            encryption = serialization.BestAvailableEncryption(key_password.encode())
        else:
            encryption = serialization.NoEncryption()
        private_key = key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
        )
        logger.info(f"[TLS] Loaded keystore {keystore_path}")
        return cls(cert_chain=chain, private_key=private_key, password=key_password)


def _write_private(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def build_server_ssl_context(bundle: Optional[CredentialBundle]) -> ssl.SSLContext:
    """
    Build a server-side SSLContext from an in-memory credential bundle.

    Raises:
        TlsCredentialError: the bundle is missing, malformed or the key does not unlock.
    """
    if bundle is None:
        raise TlsCredentialError("TLS is enabled but no credential bundle was supplied")
    try:
        certificates = x509.load_pem_x509_certificates(bundle.cert_chain)
    except ValueError as e:
        raise TlsCredentialError(f"Certificate chain is not valid PEM: {e}")
    if not certificates:
        raise TlsCredentialError("Certificate chain is empty")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    password = (bundle.password or "").encode()

    # SSLContext only loads credentials from files
    with tempfile.TemporaryDirectory(prefix="service-proxy-tls-") as workdir:
        cert_file = os.path.join(workdir, "chain.pem")
        key_file = os.path.join(workdir, "key.pem")
        _write_private(cert_file, bundle.cert_chain)
        _write_private(key_file, bundle.private_key)
        try:
            context.load_cert_chain(cert_file, key_file, password=lambda: password)
        except (ssl.SSLError, OSError, ValueError) as e:
            raise TlsCredentialError(f"Cannot use TLS credentials: {e}")

    subject = certificates[0].subject.rfc4514_string()
    logger.info(f"[TLS] Server certificate: {subject} ({len(certificates)} in chain)")
    return context

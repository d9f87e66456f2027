"""Root CA creation and per-host certificate issuing."""

from __future__ import annotations

import datetime as dt
import time
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed448, ed25519, rsa
from cryptography.x509.oid import NameOID

from .errors import ProxyError

VALIDITY_SECONDS = 365 * 24 * 3600
CA_KEY_SIZE = 4096
LEAF_KEY_SIZE = 2048
CA_COMMON_NAME = "Proxy-CA"
LEAF_COMMON_NAME = "Proxy-Server"
CA_CERT_FILE = "sca.pem"
CA_DER_FILE = "sca.der"
CA_KEY_FILE = "sca.key"


def current_time() -> int:
    """Return the current Unix time in whole seconds."""
    return int(time.time())


def _validity() -> tuple[dt.datetime, dt.datetime]:
    now = current_time()
    not_before = dt.datetime.fromtimestamp(now, tz=dt.timezone.utc)
    return not_before, not_before + dt.timedelta(seconds=VALIDITY_SECONDS)


def _subject(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "CN"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _pkcs8_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _signing_hash(key):
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def gen_ca(directory: str | Path = ".") -> tuple[Path, Path, Path]:
    """Create a self-signed root CA valid for one year.

    Writes ``sca.pem``, ``sca.der`` and ``sca.key`` into *directory* and
    returns their paths in that order.
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=CA_KEY_SIZE)
    name = _subject(CA_COMMON_NAME)
    not_before, not_after = _validity()
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )

    target = Path(directory)
    pem_path = target / CA_CERT_FILE
    der_path = target / CA_DER_FILE
    key_path = target / CA_KEY_FILE
    try:
        pem_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        der_path.write_bytes(cert.public_bytes(serialization.Encoding.DER))
        key_path.write_bytes(_pkcs8_pem(key))
    except OSError as exc:
        raise ProxyError(exc) from exc
    return pem_path, der_path, key_path


def gen_cert_for_sni(sni: str, ca: str | Path, key: str | Path) -> tuple[str, str]:
    """Issue a certificate for host *sni* signed by the CA in *ca* / *key*.

    Returns the certificate and its private key, both PEM encoded.
    """
    if not sni.isascii():
        raise ProxyError(f"invalid DNS name: {sni!r}")
    try:
        ca_pem = Path(ca).read_bytes()
        ca_key_pem = Path(key).read_bytes()
    except OSError as exc:
        raise ProxyError(exc) from exc
    try:
        ca_cert = x509.load_pem_x509_certificate(ca_pem)
        ca_key = serialization.load_pem_private_key(ca_key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise ProxyError(exc) from exc

    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=LEAF_KEY_SIZE)
    not_before, not_after = _validity()
    try:
        cert = (
            x509.CertificateBuilder()
            .subject_name(_subject(LEAF_COMMON_NAME))
            .issuer_name(ca_cert.subject)
            .public_key(leaf_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(sni)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(leaf_key.public_key()), critical=False
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, _signing_hash(ca_key))
        )
    except (ValueError, TypeError) as exc:
        raise ProxyError(exc) from exc

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = _pkcs8_pem(leaf_key).decode("ascii")
    return cert_pem, key_pem
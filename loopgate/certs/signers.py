"""
Signing backends for the local certificate authority.

Both backends turn a PEM certificate signing request into a PEM leaf
certificate signed by the root key, with the same extensions, so either
produces a chain that validates against the root.
"""

import asyncio
import datetime
import logging
import os
import tempfile
from typing import List

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from ..errors import CryptoError

logger = logging.getLogger("loopgate.certs.signers")

# Leaves are backdated slightly so a freshly issued certificate is
# already valid on hosts whose clock runs a little behind.
BACKDATE = datetime.timedelta(minutes=1)


def csr_dns_names(csr: x509.CertificateSigningRequest) -> List[str]:
    """Return the DNS names requested in a CSR's SAN extension."""
    try:
        ext = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return ext.value.get_values_for_type(x509.DNSName)


def load_csr(csr_pem: bytes) -> x509.CertificateSigningRequest:
    try:
        csr = x509.load_pem_x509_csr(csr_pem)
    except ValueError as e:
        raise CryptoError(f"Invalid certificate signing request: {e}") from e
    if not csr.is_signature_valid:
        raise CryptoError("Certificate signing request signature is invalid")
    if not csr_dns_names(csr):
        raise CryptoError("Certificate signing request has no DNS subject alternative name")
    return csr


def _write_private(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class Signer:
    """Interface: sign a CSR with the root key."""

    name = "abstract"

    async def sign(
        self,
        csr_pem: bytes,
        root_key_pem: bytes,
        root_cert_pem: bytes,
        days: int,
    ) -> bytes:
        raise NotImplementedError


class CryptographySigner(Signer):
    """Signs in-process with the ``cryptography`` library."""

    name = "cryptography"

    async def sign(self, csr_pem, root_key_pem, root_cert_pem, days):
        return await asyncio.to_thread(
            self._sign_sync, csr_pem, root_key_pem, root_cert_pem, days
        )

    def _sign_sync(self, csr_pem, root_key_pem, root_cert_pem, days) -> bytes:
        csr = load_csr(csr_pem)
        try:
            root_key = serialization.load_pem_private_key(root_key_pem, password=None)
            root_cert = x509.load_pem_x509_certificate(root_cert_pem)
        except ValueError as e:
            raise CryptoError(f"Failed to load root CA: {e}") from e

        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(root_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - BACKDATE)
            .not_valid_after(now + datetime.timedelta(days=days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.SubjectAlternativeName(
                    [x509.DNSName(name) for name in csr_dns_names(csr)]
                ),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(root_key.public_key()),
                critical=False,
            )
        )

        try:
            cert = builder.sign(root_key, hashes.SHA256())
        except (ValueError, TypeError, InvalidSignature) as e:
            raise CryptoError(f"Signing failed: {e}") from e
        return cert.public_bytes(serialization.Encoding.PEM)


class OpenSSLSigner(Signer):
    """Signs with the ``openssl x509 -req`` command line tool."""

    name = "openssl"

    def __init__(self, openssl_bin: str = "openssl", timeout: float = 60):
        self.openssl_bin = openssl_bin
        self.timeout = timeout

    async def sign(self, csr_pem, root_key_pem, root_cert_pem, days):
        csr = load_csr(csr_pem)
        san = ",".join(f"DNS:{name}" for name in csr_dns_names(csr))
        extensions = (
            "basicConstraints=critical,CA:FALSE\n"
            "keyUsage=critical,digitalSignature,keyEncipherment\n"
            "extendedKeyUsage=serverAuth\n"
            f"subjectAltName={san}\n"
            "subjectKeyIdentifier=hash\n"
            "authorityKeyIdentifier=keyid,issuer\n"
        )

        # The request, root copies and extension file live only as long as
        # this directory, whichever way the call ends.
        with tempfile.TemporaryDirectory(prefix="loopgate-sign-") as workdir:
            paths = {
                "csr": os.path.join(workdir, "request.csr"),
                "key": os.path.join(workdir, "root.key"),
                "crt": os.path.join(workdir, "root.crt"),
                "ext": os.path.join(workdir, "leaf.ext"),
                "out": os.path.join(workdir, "leaf.crt"),
            }
            for name, data in (
                ("csr", csr_pem),
                ("key", root_key_pem),
                ("crt", root_cert_pem),
                ("ext", extensions.encode()),
            ):
                await asyncio.to_thread(_write_private, paths[name], data)

            cmd = [
                self.openssl_bin,
                "x509",
                "-req",
                "-in", paths["csr"],
                "-CA", paths["crt"],
                "-CAkey", paths["key"],
                "-set_serial", str(x509.random_serial_number()),
                "-days", str(days),
                "-sha256",
                "-extfile", paths["ext"],
                "-out", paths["out"],
            ]

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                raise CryptoError(f"openssl not found at {self.openssl_bin}") from None

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                if process.returncode is None:
                    process.kill()
                await process.wait()
                raise CryptoError(f"openssl timed out after {self.timeout}s") from None

            if process.returncode != 0:
                error_msg = stderr.decode().strip() or stdout.decode().strip()
                logger.error(f"openssl signing failed: {error_msg}")
                raise CryptoError(f"openssl signing failed: {error_msg}")

            return await asyncio.to_thread(_read_file, paths["out"])


def create_signer(name: str, openssl_bin: str = "openssl") -> Signer:
    """Build the signing backend selected by configuration."""
    if name == "cryptography":
        return CryptographySigner()
    if name == "openssl":
        return OpenSSLSigner(openssl_bin=openssl_bin)
    raise ValueError(f"Unknown signer: {name}")

"""
Local certificate authority.

Layout under ``certs_dir``::

    ca/rootCA.key   ca/rootCA.crt     root pair, created once
    <domain>.key    <domain>.crt      one leaf pair per domain
"""

import asyncio
import datetime
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..errors import CryptoError, LoopgateError, NotFoundError
from ..validation import normalize_domain
from .models import CertificateInfo
from .signers import BACKDATE, CryptographySigner, Signer

logger = logging.getLogger("loopgate.certs")

ROOT_COMMON_NAME = "loopgate Local CA"
ROOT_ORGANIZATION = "loopgate"
ROOT_UNIT = "Development"


def _private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _write_file(path: Path, data: bytes, mode: int = 0o644) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


def _common_name(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


def _san_names(cert: x509.Certificate) -> List[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return ext.value.get_values_for_type(x509.DNSName)


class LocalCertificateAuthority:
    """
    Issues and verifies per-domain leaf certificates signed by a
    self-signed local root.

    Key generation and signing run off the event loop. Issuance for one
    domain is serialized by a per-domain lock.
    """

    def __init__(
        self,
        certs_dir: Path,
        signer: Optional[Signer] = None,
        root_key_size: int = 4096,
        leaf_key_size: int = 2048,
        ca_validity_days: int = 3650,
        leaf_validity_days: int = 365,
    ):
        self.certs_dir = Path(certs_dir)
        self.ca_dir = self.certs_dir / "ca"
        self.root_key_path = self.ca_dir / "rootCA.key"
        self.root_cert_path = self.ca_dir / "rootCA.crt"
        self.signer = signer or CryptographySigner()
        self.root_key_size = root_key_size
        self.leaf_key_size = leaf_key_size
        self.ca_validity_days = ca_validity_days
        self.leaf_validity_days = leaf_validity_days
        self._root_lock = asyncio.Lock()
        self._domain_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._root: Optional[Tuple[bytes, bytes]] = None

    # ── Paths ─────────────────────────────────────────────────────────

    @property
    def root_paths(self) -> Tuple[str, str]:
        """(cert_path, key_path) of the root CA."""
        return str(self.root_cert_path), str(self.root_key_path)

    def leaf_paths(self, domain: str) -> Tuple[Path, Path]:
        """(cert_path, key_path) for a domain's leaf certificate."""
        domain = normalize_domain(domain)
        return self.certs_dir / f"{domain}.crt", self.certs_dir / f"{domain}.key"

    def root_exists(self) -> bool:
        return self.root_key_path.exists() and self.root_cert_path.exists()

    # ── Root CA ───────────────────────────────────────────────────────

    async def initialize(self) -> Tuple[str, str]:
        """
        Ensure storage directories and the root pair exist.

        Safe to call on every startup; the root is generated only once.
        """
        async with self._root_lock:
            if self._root is not None:
                return self.root_paths

            try:
                await asyncio.to_thread(self.ca_dir.mkdir, parents=True, exist_ok=True)
            except OSError as e:
                raise LoopgateError(f"Failed to create certificate directories: {e}") from e

            if not self.root_exists():
                logger.info(f"Generating root CA at {self.ca_dir}")
                await asyncio.to_thread(self._generate_root)

            self._root = await asyncio.to_thread(self._load_root)
            return self.root_paths

    def _generate_root(self) -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.root_key_size)
        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, ROOT_COMMON_NAME),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ROOT_ORGANIZATION),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, ROOT_UNIT),
        ])
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - BACKDATE)
            .not_valid_after(now + datetime.timedelta(days=self.ca_validity_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
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
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
        _write_file(self.root_key_path, _private_key_pem(key), 0o600)
        _write_file(self.root_cert_path, cert.public_bytes(serialization.Encoding.PEM))

    def _load_root(self) -> Tuple[bytes, bytes]:
        key_pem = self.root_key_path.read_bytes()
        cert_pem = self.root_cert_path.read_bytes()
        try:
            serialization.load_pem_private_key(key_pem, password=None)
            x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise CryptoError(f"Root CA at {self.ca_dir} is unreadable: {e}") from e
        return key_pem, cert_pem

    # ── Leaf certificates ─────────────────────────────────────────────

    async def issue(self, domain: str) -> CertificateInfo:
        """
        Issue a leaf certificate for ``domain``, replacing any existing one.
        """
        domain = normalize_domain(domain)
        await self.initialize()
        root_key_pem, root_cert_pem = self._root

        async with self._domain_locks[domain]:
            logger.info(f"Issuing certificate for {domain}")
            key_pem, csr_pem = await asyncio.to_thread(self._build_request, domain)
            cert_pem = await self.signer.sign(
                csr_pem, root_key_pem, root_cert_pem, self.leaf_validity_days
            )

            cert_path, key_path = self.leaf_paths(domain)
            try:
                await asyncio.to_thread(_write_file, key_path, key_pem, 0o600)
                await asyncio.to_thread(_write_file, cert_path, cert_pem)
            except OSError as e:
                raise LoopgateError(f"Failed to store certificate for {domain}: {e}") from e

            info = await self.verify(domain)
            if info is None:
                raise CryptoError(f"Certificate for {domain} was not stored")
            logger.info(f"Certificate issued for {domain}, valid until {info.valid_to.isoformat()}")
            return info

    def _build_request(self, domain: str) -> Tuple[bytes, bytes]:
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=self.leaf_key_size)
            csr = (
                x509.CertificateSigningRequestBuilder()
                .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
                .add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(domain)]),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Failed to build signing request for {domain}: {e}") from e
        return _private_key_pem(key), csr.public_bytes(serialization.Encoding.PEM)

    async def verify(self, domain: str) -> Optional[CertificateInfo]:
        """
        Return metadata for the stored certificate, or None if absent.

        ``is_valid`` requires the current time to fall inside the validity
        window and ``domain`` to be named in the SAN list or CN.
        """
        domain = normalize_domain(domain)
        cert_path, key_path = self.leaf_paths(domain)
        if not cert_path.exists() or not key_path.exists():
            return None
        return await asyncio.to_thread(self._describe, domain, cert_path, key_path)

    def _describe(self, domain: str, cert_path: Path, key_path: Path) -> CertificateInfo:
        try:
            cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
            key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        except FileNotFoundError:
            raise NotFoundError(f"Certificate for {domain} disappeared") from None
        except ValueError as e:
            raise CryptoError(f"Failed to parse certificate for {domain}: {e}") from e

        valid_from = cert.not_valid_before_utc
        valid_to = cert.not_valid_after_utc
        now = datetime.datetime.now(datetime.timezone.utc)
        san = _san_names(cert)
        common_name = _common_name(cert.subject)

        in_window = valid_from <= now <= valid_to
        names_domain = domain in san or common_name == domain
        key_matches = key.public_key().public_numbers() == cert.public_key().public_numbers()

        return CertificateInfo(
            domain=domain,
            valid_from=valid_from,
            valid_to=valid_to,
            issuer=_common_name(cert.issuer) or "Unknown",
            is_valid=in_window and names_domain and key_matches,
            san=san,
            cert_path=str(cert_path),
            key_path=str(key_path),
        )

    async def delete(self, domain: str) -> bool:
        """Remove a domain's leaf files; False if there were none."""
        domain = normalize_domain(domain)
        async with self._domain_locks[domain]:
            removed = False
            for path in self.leaf_paths(domain):
                try:
                    await asyncio.to_thread(path.unlink)
                    removed = True
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise LoopgateError(f"Failed to delete {path}: {e}") from e

        if removed:
            logger.info(f"Deleted certificate for {domain}")
        return removed

    async def list(self) -> List[CertificateInfo]:
        """All parsable leaf certificates in storage."""
        if not self.certs_dir.exists():
            return []

        certificates: List[CertificateInfo] = []
        for cert_file in sorted(self.certs_dir.glob("*.crt")):
            try:
                info = await self.verify(cert_file.stem)
            except LoopgateError as e:
                logger.warning(f"Skipping unreadable certificate {cert_file.name}: {e}")
                continue
            if info:
                certificates.append(info)
        return certificates

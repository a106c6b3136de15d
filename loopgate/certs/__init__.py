"""Local certificate authority for loopgate."""

from .authority import LocalCertificateAuthority
from .models import CertificateInfo
from .signers import CryptographySigner, OpenSSLSigner, Signer, create_signer

__all__ = [
    "CertificateInfo",
    "CryptographySigner",
    "LocalCertificateAuthority",
    "OpenSSLSigner",
    "Signer",
    "create_signer",
]

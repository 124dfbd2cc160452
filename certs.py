# certs.py – app-only 인증용 자체 서명 인증서 생성 / 로드
import datetime
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from errors import AuthenticationError
from utils import safe_filename

logger = logging.getLogger(__name__)

_PEM_CERT = re.compile(rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.S)
_PEM_KEY = re.compile(rb"-----BEGIN (?:RSA |ENCRYPTED )?PRIVATE KEY-----.+?-----END (?:RSA |ENCRYPTED )?PRIVATE KEY-----", re.S)


@dataclass
class CertificateInfo:
    thumbprint: str
    subject: str
    pem_path: str
    cer_path: str
    not_after: str


def thumbprint_of(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def _common_name(subject: str) -> str:
    m = re.search(r"CN=([^,]+)", subject)
    return (m.group(1) if m else subject).strip()


def new_app_certificate(subject: str = "CN=PurviewMigration", out_dir: str = ".",
                        years: int = 2, password: Optional[str] = None) -> CertificateInfo:
    """
    RSA 2048 자체 서명 인증서 생성.
    - <name>.pem : 개인 키 + 인증서 (이 도구가 로그인에 사용)
    - <name>.cer : 공개 인증서 DER (앱 등록에 업로드)
    """
    cn = _common_name(subject)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=365 * years))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(digital_signature=True, key_encipherment=True, content_commitment=False,
                                     data_encipherment=False, key_agreement=False, key_cert_sign=False,
                                     crl_sign=False, encipher_only=False, decipher_only=False), critical=True)
        .sign(key, hashes.SHA256())
    )

    encryption = (serialization.BestAvailableEncryption(password.encode("utf-8"))
                  if password else serialization.NoEncryption())
    os.makedirs(out_dir, exist_ok=True)
    base = os.path.join(out_dir, safe_filename(cn, "certificate"))
    with open(base + ".pem", "wb") as f:
        f.write(key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption))
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    with open(base + ".cer", "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.DER))

    info = CertificateInfo(thumbprint=thumbprint_of(cert), subject=f"CN={cn}", pem_path=base + ".pem",
                           cer_path=base + ".cer", not_after=(now + datetime.timedelta(days=365 * years)).isoformat())
    logger.info("created certificate %s (thumbprint %s)", info.subject, info.thumbprint)
    return info


def load_certificate(path: str, password: Optional[str] = None) -> Tuple[str, str]:
    """Return (private key PEM text, SHA-1 thumbprint) from a .pem or .pfx file."""
    if not path or not os.path.exists(path):
        raise AuthenticationError(f"certificate file not found: {path!r}",
                                  hint="Set PURVIEW_CERT_PATH or pass --certificate-path.")
    with open(path, "rb") as f:
        data = f.read()
    pwd = password.encode("utf-8") if password else None

    try:
        if path.lower().endswith((".pfx", ".p12")):
            key, cert, _ = pkcs12.load_key_and_certificates(data, pwd)
        else:
            key_block, cert_block = _PEM_KEY.search(data), _PEM_CERT.search(data)
            if key_block is None or cert_block is None:
                raise AuthenticationError(f"{path}: PEM file must contain both the private key and the certificate")
            key = serialization.load_pem_private_key(key_block.group(0), password=pwd)
            cert = x509.load_pem_x509_certificate(cert_block.group(0))
    except (ValueError, TypeError) as e:
        raise AuthenticationError(f"{path}: cannot read certificate ({e})",
                                  hint="Check PURVIEW_CERT_PASSWORD and the file format (.pem or .pfx).")
    if key is None or cert is None:
        raise AuthenticationError(f"{path}: certificate or private key missing")

    pem = key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
                            serialization.NoEncryption()).decode("ascii")
    return pem, thumbprint_of(cert)

"""Credential provisioning for repository access.

Produces the authentication material the environment's source controller uses
to pull from the repository: an SSH keypair plus the remote's host keys, basic
credentials, or TLS material. An existing Secret with the same name is always
reused unless regeneration is forced, so re-running bootstrap never rotates
keys behind the user's back.
"""

from __future__ import annotations

import base64
import hashlib
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from ..errors import CredentialError, HostScanError, NotFoundError
from ..shared.logging import get_logger
from .environment import EnvironmentClient, ObjectRef
from .options import CredentialKind, KeyAlgorithm, SecretOptions

logger = get_logger(__name__)

# Fixed Secret keys read by the source controller
PRIVATE_KEY_SECRET_KEY = "identity"
PUBLIC_KEY_SECRET_KEY = "identity.pub"
KNOWN_HOSTS_SECRET_KEY = "known_hosts"
USERNAME_SECRET_KEY = "username"
PASSWORD_SECRET_KEY = "password"
CA_FILE_SECRET_KEY = "caFile"
CERT_FILE_SECRET_KEY = "certFile"
KEY_FILE_SECRET_KEY = "keyFile"

_CURVES = {
    "p256": ec.SECP256R1,
    "p384": ec.SECP384R1,
    "p521": ec.SECP521R1,
}


@dataclass(frozen=True)
class KeyPair:
    """OpenSSH-encoded private key and authorized_keys-encoded public key."""

    private_key: bytes
    public_key: bytes


@dataclass(frozen=True)
class CredentialBundle:
    """Base of the credential union. Immutable once produced."""

    reused: bool = field(default=False, compare=False)

    @property
    def kind(self) -> CredentialKind:
        raise NotImplementedError

    @property
    def public_material(self) -> str:
        """Material safe to show the user for confirmation."""
        return ""

    def secret_data(self) -> dict[str, str]:
        raise NotImplementedError


@dataclass(frozen=True)
class SSHCredential(CredentialBundle):
    """Asymmetric keypair plus the verified host keys of the remote."""

    private_key: bytes = b""
    public_key: bytes = b""
    known_hosts: bytes = b""
    password: str = ""

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.SSH

    @property
    def public_material(self) -> str:
        return self.public_key.decode().strip()

    @property
    def host_fingerprints(self) -> list[str]:
        return host_key_fingerprints(self.known_hosts)

    def secret_data(self) -> dict[str, str]:
        data = {
            PRIVATE_KEY_SECRET_KEY: self.private_key.decode(),
            PUBLIC_KEY_SECRET_KEY: self.public_key.decode(),
            KNOWN_HOSTS_SECRET_KEY: self.known_hosts.decode(),
        }
        if self.password:
            data[PASSWORD_SECRET_KEY] = self.password
        return data


@dataclass(frozen=True)
class BasicCredential(CredentialBundle):
    """Username and password (or token), optionally with a CA bundle."""

    username: str = ""
    password: str = ""
    ca: bytes = b""

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.BASIC

    def secret_data(self) -> dict[str, str]:
        data = {USERNAME_SECRET_KEY: self.username, PASSWORD_SECRET_KEY: self.password}
        if self.ca:
            data[CA_FILE_SECRET_KEY] = self.ca.decode()
        return data


@dataclass(frozen=True)
class TLSCredential(CredentialBundle):
    """Client certificate, key and CA, all PEM encoded."""

    cert: bytes = b""
    key: bytes = b""
    ca: bytes = b""

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.TLS

    def secret_data(self) -> dict[str, str]:
        data: dict[str, str] = {}
        if self.cert:
            data[CERT_FILE_SECRET_KEY] = self.cert.decode()
        if self.key:
            data[KEY_FILE_SECRET_KEY] = self.key.decode()
        if self.ca:
            data[CA_FILE_SECRET_KEY] = self.ca.decode()
        return data


# ── key material ──


def generate_key_pair(
    algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
    rsa_bits: int = 2048,
    ecdsa_curve: str = "p384",
) -> KeyPair:
    """Generate a new keypair in OpenSSH encoding."""
    if algorithm is KeyAlgorithm.RSA:
        key = rsa.generate_private_key(public_exponent=65537, key_size=rsa_bits)
    elif algorithm is KeyAlgorithm.ECDSA:
        try:
            curve = _CURVES[ecdsa_curve]
        except KeyError as e:
            raise CredentialError(f"unsupported ECDSA curve '{ecdsa_curve}'") from e
        key = ec.generate_private_key(curve())
    elif algorithm is KeyAlgorithm.ED25519:
        key = ed25519.Ed25519PrivateKey.generate()
    else:
        raise CredentialError(f"unsupported key algorithm '{algorithm}'")
    return _encode_key_pair(key)


def _encode_key_pair(key, password: str = "") -> KeyPair:
    encryption = (
        serialization.BestAvailableEncryption(password.encode())
        if password
        else serialization.NoEncryption()
    )
    private = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=encryption,
    )
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return KeyPair(private_key=private, public_key=public + b"\n")


def _load_private_key(data: bytes, password: str = ""):
    secret = password.encode() if password else None
    try:
        if b"OPENSSH PRIVATE KEY" in data:
            return serialization.load_ssh_private_key(data, password=secret)
        return serialization.load_pem_private_key(data, password=secret)
    except TypeError as e:
        # Raised for a missing passphrase, or one given for an unencrypted key
        raise CredentialError(f"failed to load private key: {e}") from e
    except ValueError as e:
        raise CredentialError(f"failed to parse private key: {e}") from e


def load_key_pair(path: Path, password: str = "") -> KeyPair:
    """Load a keypair from a private key file.

    The private key is kept byte-for-byte as read (still encrypted if it was);
    the public key is derived from it.
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise CredentialError(f"failed to read private key file {path}: {e}") from e
    key = _load_private_key(data, password)
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return KeyPair(private_key=data, public_key=public + b"\n")


def decrypt_private_key(private_key: bytes, password: str = "") -> bytes:
    """Return an unencrypted OpenSSH encoding of ``private_key``."""
    if not password:
        return private_key
    return _encode_key_pair(_load_private_key(private_key, password)).private_key


# ── host identity ──


def scan_host_keys(host: str, timeout: float = 30.0) -> bytes:
    """Retrieve the public host keys of ``host`` in known_hosts format.

    Args:
        host: ``hostname`` or ``hostname:port``.
        timeout: Seconds before the probe is abandoned.

    Raises:
        HostScanError: when no host key could be retrieved.
    """
    hostname, _, port = host.rpartition(":") if ":" in host else (host, "", "")
    cmd = ["ssh-keyscan", "-T", str(max(1, int(timeout)))]
    if port:
        cmd += ["-p", port]
    cmd.append(hostname)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout + 5,
        )
    except FileNotFoundError as e:
        raise HostScanError("ssh-keyscan not found. Is OpenSSH installed?", retryable=False) from e
    except subprocess.TimeoutExpired as e:
        raise HostScanError(f"host key scan of {host} timed out after {timeout}s") from e

    lines = [
        line
        for line in result.stdout.splitlines()
        if line.strip() and not line.startswith("#")
    ]
    if not lines:
        detail = result.stderr.strip() or "no host keys returned"
        raise HostScanError(f"failed to scan host keys of {host}: {detail}", data={"host": host})
    return ("\n".join(sorted(lines)) + "\n").encode()


def host_key_fingerprints(known_hosts: bytes) -> list[str]:
    """SHA256 fingerprints (``SHA256:<base64>``) of each known_hosts entry."""
    fingerprints = []
    for line in known_hosts.decode().splitlines():
        fields = line.split()
        if len(fields) < 3 or line.startswith("#"):
            continue
        try:
            blob = base64.b64decode(fields[2])
        except ValueError:
            continue
        digest = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
        fingerprints.append(f"SHA256:{digest}")
    return fingerprints


def _read_optional(path: Path | None) -> bytes:
    if not path:
        return b""
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise CredentialError(f"failed to read {path}: {e}") from e


def bundle_from_secret_data(data: dict[str, str]) -> CredentialBundle:
    """Rebuild a bundle from the decoded data of an existing Secret."""
    if PRIVATE_KEY_SECRET_KEY in data:
        return SSHCredential(
            reused=True,
            private_key=data[PRIVATE_KEY_SECRET_KEY].encode(),
            public_key=data.get(PUBLIC_KEY_SECRET_KEY, "").encode(),
            known_hosts=data.get(KNOWN_HOSTS_SECRET_KEY, "").encode(),
            password=data.get(PASSWORD_SECRET_KEY, ""),
        )
    if USERNAME_SECRET_KEY in data or PASSWORD_SECRET_KEY in data:
        return BasicCredential(
            reused=True,
            username=data.get(USERNAME_SECRET_KEY, ""),
            password=data.get(PASSWORD_SECRET_KEY, ""),
            ca=data.get(CA_FILE_SECRET_KEY, "").encode(),
        )
    return TLSCredential(
        reused=True,
        cert=data.get(CERT_FILE_SECRET_KEY, "").encode(),
        key=data.get(KEY_FILE_SECRET_KEY, "").encode(),
        ca=data.get(CA_FILE_SECRET_KEY, "").encode(),
    )


def decode_secret_data(secret: dict) -> dict[str, str]:
    """Merge ``data`` (base64) and ``stringData`` of a Secret object."""
    decoded = {
        key: base64.b64decode(value).decode()
        for key, value in (secret.get("data") or {}).items()
    }
    decoded.update(secret.get("stringData") or {})
    return decoded


class CredentialProvisioner:
    """Produce the credential bundle for the environment-side Secret."""

    def __init__(
        self,
        environment: EnvironmentClient | None = None,
        host_scanner: Callable[[str, float], bytes] = scan_host_keys,
    ):
        """Initialize provisioner.

        Args:
            environment: Client used to look for an existing Secret. When None
                the lookup is skipped (export-only use).
            host_scanner: Callable returning known_hosts bytes for a host.
        """
        self.environment = environment
        self.host_scanner = host_scanner

    def existing(self, options: SecretOptions) -> CredentialBundle | None:
        """Return the bundle stored in an existing Secret, if any."""
        if self.environment is None:
            return None
        ref = ObjectRef("v1", "Secret", options.name, options.namespace)
        try:
            secret = self.environment.get(ref)
        except NotFoundError:
            return None
        logger.info("reusing existing secret", secret=str(ref))
        return bundle_from_secret_data(decode_secret_data(secret))

    def generate(self, options: SecretOptions) -> CredentialBundle:
        """Return the credential bundle described by ``options``.

        An existing Secret of the same name is reused as-is unless
        ``options.force`` is set.
        """
        if not options.force:
            found = self.existing(options)
            if found is not None:
                return found

        if options.kind is CredentialKind.SSH:
            return self._generate_ssh(options)
        if options.kind is CredentialKind.BASIC:
            return BasicCredential(
                username=options.username,
                password=options.password,
                ca=_read_optional(options.ca_file),
            )
        if options.kind is CredentialKind.TLS:
            return TLSCredential(
                cert=_read_optional(options.cert_file),
                key=_read_optional(options.key_file),
                ca=_read_optional(options.ca_file),
            )
        raise CredentialError(f"unsupported credential kind '{options.kind}'")

    def _generate_ssh(self, options: SecretOptions) -> SSHCredential:
        if options.private_key_file:
            pair = load_key_pair(options.private_key_file, options.password)
            logger.info("loaded private key", path=str(options.private_key_file))
        else:
            pair = generate_key_pair(options.key_algorithm, options.rsa_bits, options.ecdsa_curve)
            logger.info("generated keypair", algorithm=options.key_algorithm.value)

        known_hosts = self.host_scanner(options.ssh_hostname, options.host_scan_timeout)
        logger.info(
            "scanned host keys",
            host=options.ssh_hostname,
            fingerprints=host_key_fingerprints(known_hosts),
        )
        return SSHCredential(
            private_key=pair.private_key,
            public_key=pair.public_key,
            known_hosts=known_hosts,
            password=options.password if options.private_key_file else "",
        )

"""SSH key material: generation, validation and the private key sink."""

import os
import stat
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import ValidationError
from .utils import log

PRIVATE_KEY_MODE = 0o600


def generate_key_pair(bits: int = 4096) -> tuple[bytes, str]:
    """:return: (private_pem, public_openssh)"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_ssh = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return private_pem, public_ssh.decode()


def validate_public_key(text: str) -> str:
    """Check that text is a single OpenSSH public key line.

    :return: The key with surrounding whitespace stripped
    :raises ValidationError: If the key cannot be parsed
    """
    key = text.strip()
    if "\n" in key:
        raise ValidationError("public_key_openssh must be a single line")
    try:
        serialization.load_ssh_public_key(key.encode())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ValidationError(f"public_key_openssh is not a valid OpenSSH public key: {e}")
    return key


class FileKeySink:
    """Writes private key material to a file readable only by its owner.

    Use as a context manager; the file descriptor is opened with mode 0600 so
    the material is never world-readable, even briefly.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fd: int | None = None

    def __enter__(self) -> "FileKeySink":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = os.open(
            self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_KEY_MODE
        )
        # O_CREAT ignores the mode for a file that already exists
        os.fchmod(self._fd, PRIVATE_KEY_MODE)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def write(self, material: bytes) -> None:
        if self._fd is None:
            raise RuntimeError("FileKeySink.write() called outside of 'with' block")
        os.write(self._fd, material)

    def persist(self, material: bytes) -> str:
        """Write material in one scoped acquisition and verify permissions.

        :return: Path the material was written to
        """
        with self:
            self.write(material)
        mode = stat.S_IMODE(self.path.stat().st_mode)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            self.remove()
            raise ValidationError(
                f"Private key '{self.path}' ended up with mode {oct(mode)}, removed it"
            )
        log(f"Saved private key to '{self.path}'")
        return str(self.path)

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)

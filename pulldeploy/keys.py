"""Deploy key generation and the SSH environment git runs with."""

import logging
from pathlib import Path
from typing import Dict, TYPE_CHECKING

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

if TYPE_CHECKING:
    from .config import Config

KEY_BITS = 4096
BANNER_TITLE = "=== Deploy Key (Add this to your repository) ==="


class DeployKeyError(Exception):
    """Raised when the deploy key cannot be generated or prepared."""


def git_ssh_environment(private_key_path: Path) -> Dict[str, str]:
    """
    Environment overrides that make git use the deploy key.

    Returns an empty mapping when no key exists, so public HTTPS remotes
    keep working with the default SSH setup.
    """
    if not Path(private_key_path).is_file():
        return {}
    return {
        "GIT_SSH_COMMAND": (
            f"ssh -i {private_key_path} -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
        )
    }


def generate_deploy_key(private_key_path: Path, public_key_path: Path) -> None:
    """Generate an unencrypted RSA key pair (PEM private key, OpenSSH public key)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_BITS)
    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_key_openssh = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )

    try:
        private_key_path.write_bytes(private_key_pem)
        private_key_path.chmod(0o600)
        public_key_path.write_bytes(public_key_openssh + b"\n")
    except OSError as e:
        raise DeployKeyError(f"failed to write SSH keys: {e}") from e


def ensure_deploy_key(config: "Config") -> bool:
    """
    Make sure the deploy key exists when running in private mode.

    A new key's public half is printed once for registration with the
    repository host and then removed from disk.

    Returns:
        True if a new key was generated
    """
    logger = logging.getLogger('pulldeploy.keys')

    try:
        config.ssh_key_path.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise DeployKeyError(f"Failed to create SSH key directory: {e}") from e

    if not config.private_mode or config.private_key_path.exists():
        return False

    logger.info("Generating new SSH keys...")
    generate_deploy_key(config.private_key_path, config.public_key_path)

    try:
        config.private_key_path.chmod(0o600)
        public_key = config.public_key_path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeployKeyError(f"Failed to prepare deploy key: {e}") from e

    print(BANNER_TITLE)
    print(public_key.strip())
    print("=" * len(BANNER_TITLE))

    try:
        config.public_key_path.unlink()
        logger.info("Public key file removed after display")
    except OSError as e:
        logger.warning(f"Failed to remove public key file: {e}")

    return True

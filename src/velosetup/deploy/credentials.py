"""
Administrator credential generation and storage.

The credential is generated once per deployment and persisted with
owner-only permissions, so a retried deployment reuses it. Regenerating is
an explicit act that invalidates the previous secret.
"""

import json
import logging
import os
import secrets
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from velosetup.errors import ConfigError

logger = logging.getLogger(__name__)

CHARACTER_CLASSES = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
    "!#%+-.:=?@^_~",
)


@dataclass(frozen=True)
class SecretPolicy:
    """Minimum complexity for generated secrets."""
    min_length: int = 16
    min_classes: int = 3

    def __post_init__(self):
        if not 1 <= self.min_classes <= len(CHARACTER_CLASSES):
            raise ConfigError(
                f"min_classes must be between 1 and {len(CHARACTER_CLASSES)}, got {self.min_classes}"
            )
        if self.min_length < self.min_classes:
            raise ConfigError(
                f"min_length ({self.min_length}) cannot be below min_classes ({self.min_classes})"
            )

    def classes_in(self, secret: str) -> int:
        return sum(1 for chars in CHARACTER_CLASSES if any(c in chars for c in secret))

    def is_satisfied_by(self, secret: str) -> bool:
        return len(secret) >= self.min_length and self.classes_in(secret) >= self.min_classes


@dataclass(frozen=True)
class AdminCredential:
    """The administrator identity created for a deployment."""
    username: str
    generated_secret: str = field(repr=False)
    created_at: float = field(default_factory=time.time)

    def masked(self) -> str:
        return f"{self.username} / {mask_secret(self.generated_secret)}"

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "generatedSecret": self.generated_secret,
            "createdAt": int(self.created_at * 1000),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AdminCredential":
        return cls(
            username=data["username"],
            generated_secret=data["generatedSecret"],
            created_at=data.get("createdAt", time.time() * 1000) / 1000,
        )


def mask_secret(secret: str) -> str:
    """Show only the length of a secret."""
    return f"{'*' * 8} ({len(secret)} chars)"


class CredentialGenerator:
    """Generates admin credentials that satisfy a :class:`SecretPolicy`."""

    def __init__(self, policy: Optional[SecretPolicy] = None):
        self.policy = policy or SecretPolicy()

    def generate_secret(self) -> str:
        classes = CHARACTER_CLASSES[: max(self.policy.min_classes, 3)]
        alphabet = "".join(classes)
        # One character from each required class, the rest from the full alphabet
        chars = [secrets.choice(chars) for chars in classes[: self.policy.min_classes]]
        chars += [
            secrets.choice(alphabet)
            for _ in range(self.policy.min_length - len(chars))
        ]
        secrets.SystemRandom().shuffle(chars)
        secret = "".join(chars)
        if not self.policy.is_satisfied_by(secret):
            raise ConfigError(
                f"Generated secret does not satisfy the policy "
                f"(min_length={self.policy.min_length}, min_classes={self.policy.min_classes})"
            )
        return secret

    def create_admin_user(self, username: str = "admin") -> AdminCredential:
        credential = AdminCredential(username=username, generated_secret=self.generate_secret())
        logger.info(f"Generated admin credential: {credential.masked()}")
        return credential


class CredentialStore:
    """
    Persists the admin credential for an install path.

    Stored as JSON with 0600 permissions inside a 0700 directory.
    """

    def __init__(self, directory: Path, generator: Optional[CredentialGenerator] = None):
        self.directory = Path(directory)
        self.generator = generator or CredentialGenerator()

    @property
    def credential_file(self) -> Path:
        return self.directory / "admin_credential.json"

    def load(self) -> Optional[AdminCredential]:
        """Load the stored credential, if any."""
        if not self.credential_file.exists():
            return None
        try:
            with open(self.credential_file, "r") as f:
                return AdminCredential.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigError(f"Stored credential is unreadable: {e}") from e

    def save(self, credential: AdminCredential):
        self.directory.mkdir(parents=True, exist_ok=True)
        # Restrictive permissions on the credential directory
        try:
            os.chmod(self.directory, 0o700)
        except OSError:
            logger.warning(f"Could not restrict permissions on {self.directory}")

        fd = os.open(self.credential_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(credential.to_dict(), f, indent=2)
        os.chmod(self.credential_file, 0o600)

    def get_or_create(self, username: str, regenerate: bool = False) -> AdminCredential:
        """
        Return the stored credential, generating one only if none exists.

        Args:
            username: Admin username for a newly generated credential.
            regenerate: Replace any stored credential with a fresh one.
        """
        existing = None if regenerate else self.load()
        if existing is not None and existing.username == username:
            logger.info(f"Reusing stored admin credential: {existing.masked()}")
            return existing

        if regenerate:
            logger.warning("Regenerating admin credential; the previous secret is invalidated")
        elif existing is not None:
            logger.warning(
                f"Replacing stored credential for {existing.username!r} with a new one for {username!r}"
            )
        credential = self.generator.create_admin_user(username)
        self.save(credential)
        return credential

    def delete(self):
        if self.credential_file.exists():
            self.credential_file.unlink()

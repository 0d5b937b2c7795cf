"""Detached signatures over packaged artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import gnupg

from buildworker.errors import SigningError


class Signer(Protocol):
    def sign(self, artifact: Path) -> bytes:
        """Return an ASCII-armored detached signature of ``artifact``."""


@dataclass(slots=True)
class GnupgSigner:
    gpg: gnupg.GPG
    fingerprint: str
    passphrase: str = ""

    @classmethod
    def from_key_file(
        cls,
        key_file: Path,
        password_file: Path | None = None,
        *,
        gnupghome: Path | None = None,
    ) -> GnupgSigner:
        """Import an armored private key into ``gnupghome`` and sign with it."""
        try:
            armored = Path(key_file).read_text(encoding="utf-8")
            passphrase = Path(password_file).read_text(encoding="utf-8").strip() if password_file else ""
        except OSError as exc:
            raise SigningError(
                "Signing key could not be read.",
                hint="Check SIGNING_KEY_FILE and KEY_PASSWORD_FILE.",
                context={"key_file": str(key_file), "error": str(exc)},
            ) from exc

        if gnupghome is not None:
            gnupghome.mkdir(parents=True, exist_ok=True, mode=0o700)
        try:
            gpg = gnupg.GPG(gnupghome=str(gnupghome) if gnupghome is not None else None)
        except OSError as exc:
            raise SigningError(
                "GnuPG is not available.",
                hint="Install gpg and make sure it is on PATH.",
                context={"error": str(exc)},
            ) from exc

        imported = gpg.import_keys(armored, passphrase=passphrase or None)
        fingerprints = [fp for fp in imported.fingerprints if fp]
        if not fingerprints:
            raise SigningError(
                "Signing key file contains no usable key.",
                context={"key_file": str(key_file), "status": str(getattr(imported, "stderr", ""))[-500:]},
            )
        return cls(gpg=gpg, fingerprint=fingerprints[0], passphrase=passphrase)

    def sign(self, artifact: Path) -> bytes:
        with artifact.open("rb") as handle:
            signed = self.gpg.sign_file(
                handle,
                keyid=self.fingerprint,
                detach=True,
                binary=False,
                passphrase=self.passphrase or None,
            )
        if not signed.data:
            raise SigningError(
                "Signing the artifact failed.",
                context={"artifact": artifact.name, "status": str(signed.status or ""), "stderr": signed.stderr[-500:]},
            )
        return signed.data

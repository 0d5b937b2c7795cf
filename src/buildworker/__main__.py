"""Run the build worker HTTP server."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from buildworker.api import ApiCredentials, create_app
from buildworker.errors import BuildworkerError
from buildworker.service import BuildService
from buildworker.settings import Settings
from buildworker.signing import GnupgSigner

DEFAULT_SIGNING_KEY_FILE = "signing_key.asc"
DEFAULT_KEY_PASSWORD_FILE = "signing_key_password.txt"

logger = logging.getLogger("buildworker")


def _signer_from_env() -> GnupgSigner | None:
    key_file = Path(os.environ.get("SIGNING_KEY_FILE", DEFAULT_SIGNING_KEY_FILE))
    password_file = Path(os.environ.get("KEY_PASSWORD_FILE", DEFAULT_KEY_PASSWORD_FILE))
    if not key_file.exists() and "SIGNING_KEY_FILE" not in os.environ:
        logger.info("no signing key at %s; artifacts will not be signed", key_file)
        return None
    gnupghome = os.environ.get("GNUPGHOME")
    return GnupgSigner.from_key_file(
        key_file,
        password_file if password_file.exists() else None,
        gnupghome=Path(gnupghome) if gnupghome else None,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="buildworker", description=__doc__)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=2017)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = Settings.from_env()
        credentials = ApiCredentials.from_env()
        service = BuildService(settings, signer=_signer_from_env())
    except BuildworkerError as exc:
        logger.error("%s", exc)
        return 2

    uvicorn.run(create_app(service, credentials), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Mailbox credentials: a dotenv-format file, optionally SOPS-encrypted.

Keys the file leaves unset fall back to the process environment, so a
development setup can run from environment variables alone.
"""

import os
import subprocess
from collections.abc import Mapping
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

REQUIRED_KEYS = ("IMAP_SERVER", "IMAP_EMAIL", "IMAP_PASSWORD")
OPTIONAL_KEYS = (
    "IMAP_PORT",
    "IMAP_SSL",
    "IMAP_IS_GMAIL",
    "IMAP_ARCHIVE_FOLDER",
    "IMAP_TRASH_FOLDER",
)


def _sops_decrypt(path: Path) -> str:
    result = subprocess.run(
        ["sops", "--decrypt", "--input-type", "dotenv", "--output-type", "dotenv", str(path)],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def read_credentials_file(path: str | Path, *, use_sops: bool) -> dict[str, str]:
    """Parse the credentials file, decrypting it first when use_sops is set.

    Keys with empty values are dropped.

    Raises:
        FileNotFoundError: If the file does not exist.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Credentials file not found: {path}")

    text = _sops_decrypt(path) if use_sops else path.read_text()
    return {key: value for key, value in dotenv_values(stream=StringIO(text)).items() if value}


def load_credentials(
    path: str | Path,
    *,
    use_sops: bool,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve the IMAP_* credential keys from the file and the environment.

    A plain credentials file is optional; an encrypted one must exist.
    File values win over the environment.

    Raises:
        ValueError: If server, email or password is missing from both.
        FileNotFoundError: If SOPS is enabled and the file is missing.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    env = os.environ if environ is None else environ
    path = Path(path)
    from_file = read_credentials_file(path, use_sops=use_sops) if use_sops or path.exists() else {}

    values = {}
    for key in REQUIRED_KEYS + OPTIONAL_KEYS:
        value = from_file.get(key) or env.get(key)
        if value:
            values[key] = value

    missing = [key for key in REQUIRED_KEYS if key not in values]
    if missing:
        raise ValueError(
            f"Missing mailbox credentials: {', '.join(missing)} "
            f"(set them in {path} or the environment)"
        )
    return values

"""Optional symmetric GPG encryption of compressed volumes."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from build_checkpoint.exceptions import CompressionError
from build_checkpoint.logging import get_logger
from build_checkpoint.process import require_tools, run_command

log = get_logger(source=__name__)

ENCRYPTED_EXTENSION = ".gpg"
CIPHER = "AES256"


class Encryptor:
    """Encrypts and decrypts files with a passphrase, replacing the input.

    The passphrase is passed to gpg on stdin and never appears on a command line.
    """

    def __init__(self, passphrase: str, runner: Callable[..., int] = run_command):
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        self._passphrase = passphrase
        self.runner = runner

    def ensure_available(self) -> None:
        require_tools("gpg")

    def _base_command(self) -> list[str]:
        return [
            "gpg", "--batch", "--yes", "--quiet",
            "--pinentry-mode", "loopback", "--passphrase-fd", "0",
        ]

    def encrypt(self, source: Path) -> Path:
        source = Path(source)
        destination = source.with_name(source.name + ENCRYPTED_EXTENSION)
        command = self._base_command() + [
            "--symmetric", "--cipher-algo", CIPHER,
            "--output", str(destination), str(source),
        ]
        self._run(command, source, destination)
        source.unlink(missing_ok=True)
        log.debug(f"Encrypted {source.name} with {CIPHER}")
        return destination

    def decrypt(self, source: Path, destination: Path | None = None) -> Path:
        source = Path(source)
        if destination is None:
            if source.suffix != ENCRYPTED_EXTENSION:
                raise ValueError(f"Not an encrypted volume: {source}")
            destination = source.with_suffix("")
        command = self._base_command() + ["--decrypt", "--output", str(destination), str(source)]
        self._run(command, source, destination)
        source.unlink(missing_ok=True)
        return destination

    def _run(self, command: list[str], source: Path, destination: Path) -> None:
        returncode = self.runner(command, input_text=self._passphrase + "\n", log_prefix="gpg")
        if returncode != 0 or not destination.exists():
            destination.unlink(missing_ok=True)
            raise CompressionError(f"gpg failed on {source.name} (exit code {returncode})", str(source))

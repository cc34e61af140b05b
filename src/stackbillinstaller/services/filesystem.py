"""Filesystem helpers for the StackBill installer."""

import logging
import os
import shutil
import sys
import tempfile

from rich.console import Console

from stackbillinstaller.constants import SECRET_FILE_MODE
from stackbillinstaller.errors import InstallerError


class FileSystemService:
    """Encapsulates file and directory side effects on the host."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def ensure_dir(self, path: str, mode: int):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            raise InstallerError(f"Could not create directory {path}: {exc}") from exc
        self.set_permissions(path, mode)

    def file_contains_line(self, path: str, needle: str) -> bool:
        if not os.path.exists(path):
            return False
        with open(path, "r", encoding="utf-8") as file_obj:
            return any(needle in line for line in file_obj)

    def append_line_if_missing(self, path: str, needle: str, line: str) -> bool:
        if self.file_contains_line(path, needle):
            return False
        try:
            with open(path, "a", encoding="utf-8") as file_obj:
                file_obj.write(line.rstrip("\n") + "\n")
        except OSError as exc:
            raise InstallerError(f"Could not update {path}: {exc}") from exc
        self.logger.debug("Appended to %s: %s", path, line)
        return True

    def remove_lines_containing(self, path: str, needle: str) -> int:
        if not os.path.exists(path):
            return 0
        with open(path, "r", encoding="utf-8") as file_obj:
            lines = file_obj.readlines()
        kept = [line for line in lines if needle not in line]
        removed = len(lines) - len(kept)
        if removed:
            with open(path, "w", encoding="utf-8") as file_obj:
                file_obj.writelines(kept)
        return removed

    def write_private_temp(self, content: str, prefix: str, suffix: str) -> str:
        """Write content to an owner-only temp file; the caller removes it."""
        fd, temp_path = tempfile.mkstemp(prefix=prefix, suffix=suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
            file_obj.write(content)
        self.set_permissions(temp_path, SECRET_FILE_MODE)
        return temp_path

    def remove_file(self, path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as exc:
                self.logger.warning("Could not remove %s: %s", path, exc)

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

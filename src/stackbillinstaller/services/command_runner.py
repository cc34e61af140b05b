"""Subprocess execution service for the StackBill installer."""

import os
import subprocess
import time
from typing import Dict, Iterable, List, Optional

from stackbillinstaller.errors import InstallerError

MASK = "******"


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout
        self._secrets: List[str] = []

    def register_secrets(self, values: Iterable[str]):
        """Values that must never appear in logged command lines or errors."""
        for value in values:
            if value and value not in self._secrets:
                self._secrets.append(value)

    def mask(self, text: str) -> str:
        for value in self._secrets:
            text = text.replace(value, MASK)
        return text

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        retry_on_returncodes: Optional[Iterable[int]] = None,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        shown = self.mask(" ".join(cmd))
        self.logger.debug("Executing: %s", shown)

        limit = self.default_timeout if timeout is None else timeout
        attempts = max(1, retry_count + 1)
        retry_codes = set(retry_on_returncodes or [])
        options = {
            "text": True,
            "capture_output": capture_output,
            "timeout": limit,
            "input": input_text,
            "env": self._environment(env),
            "cwd": cwd,
        }

        attempt = 0
        while True:
            attempt += 1
            last_try = attempt >= attempts
            try:
                result = subprocess.run(cmd, **options)
            except FileNotFoundError as exc:
                raise InstallerError(
                    f"Required command not found: {cmd[0]}. Please install it and try again."
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if last_try:
                    raise InstallerError(f"Command timed out after {limit}s: {shown}") from exc
                self._pause(f"timed out: {shown}", attempt, attempts, retry_backoff_seconds)
                continue
            except OSError as exc:
                raise InstallerError(f"Failed to execute command: {shown}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", self.mask(result.stdout.strip()))
            if result.returncode == 0:
                return result

            failure = self._describe_failure(result, shown, capture_output)
            retryable = not retry_codes or result.returncode in retry_codes
            if retryable and not last_try:
                self._pause(failure, attempt, attempts, retry_backoff_seconds)
                continue
            if check:
                raise InstallerError(failure)
            self.logger.debug(failure)
            return result

    @staticmethod
    def _environment(extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not extra:
            return None
        merged = dict(os.environ)
        merged.update(extra)
        return merged

    def _describe_failure(self, result: subprocess.CompletedProcess, shown: str, captured: bool) -> str:
        message = f"Command failed ({result.returncode}): {shown}"
        stderr = (result.stderr or "").strip() if captured else ""
        return f"{message}\n{self.mask(stderr)}" if stderr else message

    def _pause(self, reason: str, attempt: int, attempts: int, delay: float):
        self.logger.warning("Attempt %s/%s failed, retrying in %.1fs. %s", attempt, attempts, delay, reason)
        time.sleep(delay)

    def succeeds(self, cmd: List[str], timeout: Optional[float] = 30, **kwargs) -> bool:
        """Probe-style execution: True on exit code 0, False on failure or missing binary."""
        try:
            result = self.run(cmd, check=False, capture_output=True, timeout=timeout, **kwargs)
        except InstallerError as exc:
            self.logger.debug("Probe failed: %s", exc)
            return False
        return result.returncode == 0

    def output(self, cmd: List[str], timeout: Optional[float] = 30, **kwargs) -> str:
        """Stripped stdout of a successful command, or an empty string."""
        try:
            result = self.run(cmd, check=False, capture_output=True, timeout=timeout, **kwargs)
        except InstallerError as exc:
            self.logger.debug("Probe failed: %s", exc)
            return ""
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

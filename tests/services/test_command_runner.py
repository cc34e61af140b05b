import sys

import pytest

from stackbillinstaller.errors import InstallerError
from stackbillinstaller.services.command_runner import CommandRunner


class RecordingLogger:
    def __init__(self):
        self.messages = []

    def debug(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)

    def warning(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=RecordingLogger())

    with pytest.raises(InstallerError, match="boom"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
            check=True,
            capture_output=True,
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=RecordingLogger())

    result = runner.run([sys.executable, "-c", "import sys; sys.exit(3)"], check=False, capture_output=True)

    assert result.returncode == 3


def test_command_runner_retries_only_on_listed_return_codes(tmp_path, monkeypatch):
    runner = CommandRunner(logger=RecordingLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(100 if n == 0 else 0)"
        ),
    ]

    result = runner.run(command, capture_output=True, retry_count=1, retry_on_returncodes=[100])

    assert result.returncode == 0
    assert (tmp_path / "counter.txt").read_text() == "2"


def test_command_runner_does_not_retry_other_return_codes():
    runner = CommandRunner(logger=RecordingLogger())

    with pytest.raises(InstallerError, match=r"Command failed \(1\)"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.exit(1)"],
            capture_output=True,
            retry_count=3,
            retry_on_returncodes=[100],
        )


def test_command_runner_timeout_raises_error():
    runner = CommandRunner(logger=RecordingLogger())

    with pytest.raises(InstallerError, match="timed out"):
        runner.run([sys.executable, "-c", "import time; time.sleep(2)"], capture_output=True, timeout=0.1)


def test_command_runner_masks_registered_secrets_in_logs_and_errors():
    logger = RecordingLogger()
    runner = CommandRunner(logger=logger)
    runner.register_secrets(["s3cretPass", ""])

    with pytest.raises(InstallerError) as excinfo:
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad s3cretPass'); sys.exit(2)", "s3cretPass"],
            capture_output=True,
        )

    assert "s3cretPass" not in str(excinfo.value)
    assert "******" in str(excinfo.value)
    assert all("s3cretPass" not in message for message in logger.messages)


def test_command_runner_passes_input_and_extra_environment():
    runner = CommandRunner(logger=RecordingLogger())

    result = runner.run(
        [sys.executable, "-c", "import os, sys; print(os.environ['SB_TEST'] + sys.stdin.read())"],
        capture_output=True,
        input_text="-payload",
        env={"SB_TEST": "value"},
    )

    assert result.stdout.strip() == "value-payload"


def test_probe_helpers_swallow_missing_binaries():
    runner = CommandRunner(logger=RecordingLogger())

    assert runner.succeeds(["definitely-not-a-real-binary-xyz"]) is False
    assert runner.output(["definitely-not-a-real-binary-xyz"]) == ""
    assert runner.output([sys.executable, "-c", "print('  hello  ')"]) == "hello"

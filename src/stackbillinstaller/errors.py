"""Domain errors for the StackBill installer."""


class InstallerError(RuntimeError):
    """Raised when provisioning cannot continue safely."""


class ValidationError(InstallerError):
    """Bad or missing user input; raised before any side effect."""


class MissingRequiredField(ValidationError):
    """A required option was not supplied on the command line or in config."""


class FileNotFound(ValidationError):
    """A certificate, key or CA path does not exist on disk."""


class PrerequisiteMissing(InstallerError):
    """A required external tool or privilege is absent."""


class PrivilegeError(PrerequisiteMissing):
    """Host-level installation needs root and the caller is not root."""


class CredentialRecordError(InstallerError):
    """The persisted credentials file is malformed."""


class FatalStepError(InstallerError):
    """A critical-path provisioning step failed and the run was aborted."""

    def __init__(self, step_name: str, message: str):
        super().__init__(message)
        self.step_name = step_name

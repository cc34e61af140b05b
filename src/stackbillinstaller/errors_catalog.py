"""Actionable error catalog for the StackBill installer."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_required_field": {
        "what": "Missing required option '{option}'.",
        "next": "Pass `{option}` on the command line or set `{key}` in the config file.",
    },
    "file_not_found": {
        "what": "{label} file not found: {path}",
        "next": "Check the path and make sure the file is readable by the installer.",
    },
    "invalid_domain": {
        "what": "Invalid domain name: {domain}",
        "next": "Use a fully qualified domain name such as `portal.example.com`.",
    },
    "invalid_namespace": {
        "what": "Invalid Kubernetes namespace: {namespace}",
        "next": "Use lowercase letters, digits and '-' only (at most 63 characters).",
    },
    "privilege_required": {
        "what": "Host database installation requires root privileges.",
        "next": "Re-run with `sudo`, or pass `--skip-db` to use existing databases.",
    },
    "registry_token_missing": {
        "what": "No registry token found for pulling StackBill images.",
        "next": (
            "Export `{env_var}`, or write the token to `/etc/stackbill/ecr-token` "
            "(mode 600), or pass `--registry-token-file`."
        ),
    },
    "prerequisite_missing": {
        "what": "Required command not found: {tool}",
        "next": "{hint}",
    },
    "corrupt_credentials": {
        "what": "Credentials file '{path}' is malformed: {detail}",
        "next": "Fix or delete the file; all passwords are regenerated when it is removed.",
    },
    "step_failed": {
        "what": "Step '{step}' failed: {detail}",
        "next": "{remediation}",
    },
    "step_timed_out": {
        "what": "Step '{step}' did not become ready: {detail}",
        "next": "{remediation}",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"

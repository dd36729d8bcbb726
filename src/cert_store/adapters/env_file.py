"""
Shell environment file — `env.sh` exporting the combined bundle path.

Sourcing it points the common TLS-aware tools at the combined bundle:

    source ~/.cert-store/env.sh
"""

from __future__ import annotations

from pathlib import Path

import structlog
from railway.result import Result

from cert_store.adapters.filesystem import atomic_write_bytes

log = structlog.get_logger()

ENV_FILE_NAME = "env.sh"

ENV_VARIABLES = (
    "SSL_CERT_FILE",
    "REQUESTS_CA_BUNDLE",
    "NODE_EXTRA_CA_CERTS",
    "CURL_CA_BUNDLE",
    "AWS_CA_BUNDLE",
    "GIT_SSL_CAINFO",
)


def render_env_file(bundle_path: str | Path) -> str:
    # POSIX shells on Windows (Git Bash, WSL) want forward slashes.
    shell_path = str(bundle_path).replace("\\", "/")
    lines = [
        "# Generated by certstore. Source this file to use the combined CA bundle:",
        "#   source env.sh",
        "",
    ]
    lines.extend(f'export {name}="{shell_path}"' for name in ENV_VARIABLES)
    return "\n".join(lines) + "\n"


def generate_env_file(root: Path, bundle_path: str | Path) -> Result[Path]:
    target = root / ENV_FILE_NAME
    return atomic_write_bytes(target, render_env_file(bundle_path).encode("utf-8"), operation="write env file").peek(
        lambda path: log.info("env_file.written", path=str(path))
    )

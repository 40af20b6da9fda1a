"""Redaction helpers for approval prompts and log lines."""

from __future__ import annotations

import re
from collections.abc import Sequence

MASK = "[MASKED]"

_KEY_VALUE = r"\1=" + MASK

# (pattern, replacement) pairs applied in order.
SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"""(api[_-]?key|apikey)\s*[:=]\s*["']?([a-zA-Z0-9_\-]{20,})["']?""", re.IGNORECASE), _KEY_VALUE),
    (re.compile(r"sk-[a-zA-Z0-9]{20,}"), MASK),
    (re.compile(r"""(token|auth|bearer)\s*[:=]\s*["']?([a-zA-Z0-9_\-.]{20,})["']?""", re.IGNORECASE), _KEY_VALUE),
    (re.compile(r"""(aws[_-]?access[_-]?key[_-]?id)\s*[:=]\s*["']?([A-Z0-9]{20})["']?""", re.IGNORECASE), _KEY_VALUE),
    (
        re.compile(r"""(aws[_-]?secret[_-]?access[_-]?key)\s*[:=]\s*["']?([A-Za-z0-9/+=]{40})["']?""", re.IGNORECASE),
        _KEY_VALUE,
    ),
    (re.compile(r"""(password|passwd|pwd)\s*[:=]\s*["']?([^\s"']{6,})["']?""", re.IGNORECASE), _KEY_VALUE),
    (
        re.compile(
            r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----[\s\S]+?-----END (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"
        ),
        MASK,
    ),
    (re.compile(r"(jdbc:|postgresql:|mysql:|mongodb\+srv:)//([^:/@\s]+):([^@\s]+)@"), r"\1//\2:" + MASK + "@"),
    (re.compile(r"""([A-Z_]+SECRET[A-Z_]*)\s*[:=]\s*["']?([^\s"']{8,})["']?"""), _KEY_VALUE),
    (re.compile(r"""([A-Z_]+KEY[A-Z_]*)\s*[:=]\s*["']?([^\s"']{8,})["']?"""), _KEY_VALUE),
    (re.compile(r"ghp_[a-zA-Z0-9]{36}"), MASK),
    (re.compile(r"github_pat_[a-zA-Z0-9_]{82}"), MASK),
    (re.compile(r"ssh-rsa\s+[A-Za-z0-9+/]+={0,2}"), MASK),
    (re.compile(r"ssh-ed25519\s+[A-Za-z0-9+/]+={0,2}"), MASK),
)

_SENSITIVE_FLAG = re.compile(r"--(token|password|secret|key|auth|credential).*", re.IGNORECASE)

SENSITIVE_FILE_NAMES = (
    ".env",
    "credentials.json",
    "secrets.yaml",
    "id_rsa",
    "id_ed25519",
    ".npmrc",
    ".pypirc",
    "config.yml",
)


def mask(text: str) -> str:
    """Replace API keys, tokens, passwords and private keys with `[MASKED]`."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_command(command: Sequence[str]) -> list[str]:
    """Mask each argument, hiding the value after flags such as `--token` entirely."""
    masked: list[str] = []
    for index, arg in enumerate(command):
        if index > 0 and _SENSITIVE_FLAG.fullmatch(command[index - 1]):
            masked.append(MASK)
        else:
            masked.append(mask(arg))
    return masked


def mask_path(path: str) -> str:
    """Hide the file name of well-known credential files."""
    directory, _, file_name = path.rpartition("/")
    lowered = file_name.lower()
    if any(name in lowered for name in SENSITIVE_FILE_NAMES):
        return f"{directory}/<sensitive-file>"
    return path

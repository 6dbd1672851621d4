#!/usr/bin/env python3
"""Gate G2: Security & PII check for source files.

Fails if:
- print( found in runtime code (src/**)
- a logger call mentions message content, phones, tokens or raw payloads
  without going through safe_log_context / redact_*

Logger calls are checked as a whole, across continuation lines.

Usage:
    python scripts/gate_security_pii.py [SRC_DIR]
"""

from __future__ import annotations

import re
import sys
from pathlib import Path

SENSITIVE_KEYWORDS = (
    "payload",
    "request.body",
    "body_bytes",
    "request.json",
    "content",
    "message_text",
    "phone",
    "token",
    "secret",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"\blogger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
    "redact_phone",
)

# The first argument is a fixed message; keywords inside it are allowed.
_LEADING_MESSAGE = re.compile(r"^\s*(['\"]).*?\1\s*,?", re.DOTALL)


def _call_text(lines: list[str], start: int, col: int) -> str:
    """Return the argument text of the call opening at lines[start][col]."""
    depth = 0
    chunks: list[str] = []
    for index in range(start, len(lines)):
        segment = lines[index][col:] if index == start else lines[index]
        for pos, char in enumerate(segment):
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0:
                    chunks.append(segment[: pos + 1])
                    return "\n".join(chunks)
        chunks.append(segment)
    return "\n".join(chunks)


def check_logger_call(call: str) -> list[str]:
    """Violations for one logger call's text, starting at its '('."""
    arguments = _LEADING_MESSAGE.sub("", call[1:], count=1)
    if any(pattern in arguments for pattern in REDACTION_PATTERNS):
        return []
    lowered = arguments.lower()
    return [keyword for keyword in SENSITIVE_KEYWORDS if keyword in lowered]


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    errors = []
    lines = content.splitlines()

    for lineno, line in enumerate(lines, start=1):
        code_part = line.split("#")[0]
        if not code_part.strip():
            continue

        if PRINT_PATTERN.search(code_part):
            errors.append(f"{filepath}:{lineno}: print() not allowed in runtime code")

        match = LOGGER_CALL_PATTERN.search(code_part)
        if match:
            call = _call_text(lines, lineno - 1, match.end() - 1)
            for keyword in check_logger_call(call):
                errors.append(
                    f"{filepath}:{lineno}: logger call with '{keyword}' "
                    "must use redaction (safe_log_context/redact_value)"
                )

    return errors


def main(argv: list[str] | None = None) -> int:
    """Run gate check on the source tree."""
    argv = sys.argv[1:] if argv is None else argv
    src_dir = Path(argv[0]) if argv else Path("src")

    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("Gate G2 FAILED - Security/PII violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Gate G2 PASSED - No security/PII violations found\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

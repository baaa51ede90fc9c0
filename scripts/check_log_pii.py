#!/usr/bin/env python3
"""Log hygiene gate for src/.

Fails if:
- print( is called in runtime code
- a logger call references guest contact data, phone numbers or raw
  request/callback bodies outside safe_log_context(...)

Usage:
    python scripts/check_log_pii.py [src_dir]
"""

from __future__ import annotations

import ast
import sys
from pathlib import Path

LOG_METHODS = {"debug", "info", "warning", "error", "critical", "exception"}

# Substrings of names/keys that must never reach a log line in clear.
SENSITIVE_FRAGMENTS = (
    "guest_name",
    "guest_email",
    "guest_phone",
    "guest_contact",
    "phone",
    "email",
    "password",
    "passkey",
    "payload",
    "body",
    "booking_data",
)

SAFE_WRAPPERS = {"safe_log_context", "redact_value", "redact_string", "mask_phone"}


def _is_logger_call(node: ast.Call) -> bool:
    func = node.func
    return (
        isinstance(func, ast.Attribute)
        and func.attr in LOG_METHODS
        and isinstance(func.value, ast.Name)
        and func.value.id in {"logger", "log"}
    )


def _is_safe_wrapper(node: ast.AST) -> bool:
    if not isinstance(node, ast.Call):
        return False
    func = node.func
    name = func.id if isinstance(func, ast.Name) else getattr(func, "attr", None)
    return name in SAFE_WRAPPERS


def _sensitive_names(node: ast.AST) -> list[str]:
    """Names and string keys under node, skipping redaction wrappers."""
    found: list[str] = []
    stack = [node]
    while stack:
        current = stack.pop()
        if _is_safe_wrapper(current):
            continue
        label = None
        if isinstance(current, ast.Name):
            label = current.id
        elif isinstance(current, ast.Attribute):
            label = current.attr
        elif isinstance(current, ast.Constant) and isinstance(current.value, str):
            label = current.value
        if label and any(fragment in label.lower() for fragment in SENSITIVE_FRAGMENTS):
            found.append(label)
        stack.extend(ast.iter_child_nodes(current))
    return found


def check_source(source: str, filename: str = "<string>") -> list[str]:
    """Return violations found in one module's source."""
    errors: list[str] = []
    tree = ast.parse(source, filename=filename)
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        if isinstance(node.func, ast.Name) and node.func.id == "print":
            errors.append(f"{filename}:{node.lineno}: print() not allowed in runtime code")
            continue
        if not _is_logger_call(node):
            continue
        # The message itself is the first positional argument.
        arguments = list(node.args[1:]) + [kw.value for kw in node.keywords]
        for argument in arguments:
            for name in _sensitive_names(argument):
                errors.append(
                    f"{filename}:{node.lineno}: logger call references '{name}' "
                    "without safe_log_context"
                )
    return errors


def main(argv: list[str]) -> int:
    src_dir = Path(argv[1]) if len(argv) > 1 else Path(__file__).resolve().parent.parent / "src"
    if not src_dir.exists():
        sys.stderr.write(f"Error: {src_dir} not found\n")
        return 1

    errors: list[str] = []
    for path in sorted(src_dir.rglob("*.py")):
        errors.extend(check_source(path.read_text(encoding="utf-8"), str(path)))

    if errors:
        sys.stderr.write("Log hygiene check FAILED:\n")
        for err in errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Log hygiene check passed\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))

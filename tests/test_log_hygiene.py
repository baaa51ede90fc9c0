"""Tests for the log hygiene gate (scripts/check_log_pii.py)."""

import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from scripts.check_log_pii import check_source, main

SRC = Path(__file__).resolve().parent.parent / "src"


def test_print_is_flagged():
    errors = check_source('print("debug")\n', "mod.py")
    assert errors == ["mod.py:1: print() not allowed in runtime code"]


def test_raw_guest_field_is_flagged():
    source = (
        "logger.info('booking', extra={'extra_fields': {'guest_email': request.guest.email}})\n"
    )
    errors = check_source(source, "mod.py")
    assert any("guest_email" in e for e in errors)


def test_callback_body_is_flagged():
    source = "log.warning('callback', extra={'extra_fields': {'raw': body}})\n"
    errors = check_source(source, "mod.py")
    assert errors == ["mod.py:1: logger call references 'body' without safe_log_context"]


def test_redacted_context_is_allowed():
    source = (
        "logger.info('booking', extra={'extra_fields': safe_log_context(payment_phone=phone)})\n"
        "logger.info('stk', extra={'extra_fields': {'to': mask_phone(phone)}})\n"
    )
    assert check_source(source, "mod.py") == []


def test_message_text_is_not_checked():
    assert check_source("logger.warning('invalid phone number')\n", "mod.py") == []


def test_other_calls_are_ignored():
    assert check_source("client.info(phone)\nsend(body)\n", "mod.py") == []


def test_source_tree_is_clean():
    errors = []
    for path in sorted(SRC.rglob("*.py")):
        errors.extend(check_source(path.read_text(encoding="utf-8"), str(path)))
    assert errors == []


def test_main_exit_codes(tmp_path):
    assert main(["check_log_pii.py", str(SRC)]) == 0

    (tmp_path / "bad.py").write_text("print('x')\n", encoding="utf-8")
    assert main(["check_log_pii.py", str(tmp_path)]) == 1
    assert main(["check_log_pii.py", str(tmp_path / "missing")]) == 1

"""Correlation IDs - one id per request, carried into logs and outbox events."""

import re
import uuid
from contextvars import ContextVar, Token

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Incoming ids are echoed into logs and headers; accept only short plain tokens.
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")

correlation_id_var: ContextVar[str] = ContextVar("tembea_correlation_id", default="")


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def accept_correlation_id(candidate: str | None) -> str:
    """Use the caller's id when it is well-formed, otherwise mint a new one."""
    if candidate and _ACCEPTED_ID.match(candidate):
        return candidate
    return generate_correlation_id()


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


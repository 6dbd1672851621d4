"""Correlation and request identifiers for tracing across public, worker and N8N hops."""

import random
import string
import time
import uuid
from contextvars import ContextVar, Token

# Shared by the HTTP middleware, the task backends and outbound N8N calls
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"

_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_correlation_id() -> str:
    """Return a fresh correlation ID (uuid4)."""
    return str(uuid.uuid4())


def generate_request_id(prefix: str) -> str:
    """Return a short, sortable request id such as ``send_1718000000000_k3j9x0a1b``.

    Stored in message metadata so a send attempt can be traced in provider
    and N8N logs.
    """
    suffix = "".join(random.choices(_REQUEST_ID_ALPHABET, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)

"""Composite credential tokens.

Backends that need two secrets (Bambu Lab: device serial plus LAN access
code) receive them as a single ``"<identifier>:<secret>"`` string so the
tool layer can pass one opaque ``api_key`` to every backend.
"""

from __future__ import annotations

from printer_mcp.printers.base import ValidationError

CREDENTIAL_DELIMITER = ":"


def extract_credentials(token: str) -> tuple[str, str]:
    """Split *token* into ``(identifier, secret)``.

    Raises:
        ValidationError: Unless the token is exactly two non-empty parts
            joined by ``:``.
    """
    if not isinstance(token, str):
        raise ValidationError("invalid credential format")
    parts = token.split(CREDENTIAL_DELIMITER)
    if len(parts) != 2 or not all(parts):
        raise ValidationError("invalid credential format")
    return parts[0], parts[1]


def combine_credentials(identifier: str, secret: str) -> str:
    """Build a composite token from its two halves."""
    if not identifier or not secret:
        raise ValidationError("Both identifier and secret are required.")
    if CREDENTIAL_DELIMITER in identifier or CREDENTIAL_DELIMITER in secret:
        raise ValidationError(
            f"Credential parts must not contain {CREDENTIAL_DELIMITER!r}."
        )
    return f"{identifier}{CREDENTIAL_DELIMITER}{secret}"

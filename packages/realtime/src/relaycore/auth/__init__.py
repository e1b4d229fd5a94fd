"""Credential resolution for hub connections.

Learn: relaycore never acquires tokens. An injected provider hands one
over at every connect/reconnect; we only check that it has not expired
before presenting it to the transport.
"""

from relaycore.auth.token import (
    AuthCredential,
    TokenProvider,
    decode_expiry,
    resolve_credential,
    static_token_provider,
)

__all__ = [
    "AuthCredential",
    "TokenProvider",
    "decode_expiry",
    "resolve_credential",
    "static_token_provider",
]

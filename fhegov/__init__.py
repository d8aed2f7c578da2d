"""fhegov package - confidential governance core

Encrypted proposal parameters, a proposal/vote registry on an external
key/value ledger, and signature-gated decryption of proposal values.
"""

from . import authorizer, codec, errors, registry, session, store

__all__ = ["authorizer", "codec", "errors", "registry", "session", "store"]

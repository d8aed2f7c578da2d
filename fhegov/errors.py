"""Error taxonomy for the governance core.

Each error also derives from the closest builtin so callers that only know
the builtin (``PermissionError`` for a refused signature, ``LookupError`` for
a missing proposal) keep working.
"""


class GovernanceError(Exception):
    """Base class for every error raised by fhegov."""


class StoreUnavailable(GovernanceError, ConnectionError):
    """The ledger store reported itself offline."""


class WriteFailed(GovernanceError, OSError):
    """A ledger ``put`` did not commit; the proposal or vote is not recorded."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        msg = f"write to {key!r} failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class MalformedRecord(GovernanceError, ValueError):
    """A stored proposal record could not be parsed."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        super().__init__(f"malformed record {key!r}: {reason}" if reason else key)


class ProposalNotFound(GovernanceError, LookupError):
    def __init__(self, proposal_id: str):
        self.proposal_id = proposal_id
        super().__init__(f"proposal {proposal_id!r} not found")


class MalformedCiphertext(GovernanceError, ValueError):
    """Data handed to a codec was not produced by that codec."""


class AuthorizationDenied(GovernanceError, PermissionError):
    """The signer rejected or failed to sign the decryption challenge."""


class DecryptionInProgress(GovernanceError, RuntimeError):
    """A decryption request is already outstanding for this session."""


class DecryptionAbandoned(GovernanceError, RuntimeError):
    """The session moved on before the decryption request resolved."""

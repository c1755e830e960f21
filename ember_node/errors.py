"""Error taxonomy for the Ember operator node.

Arithmetic and parameter errors are fatal to the single call. Directory and
distribution errors are scoped to one epoch. Receiver errors reject a single
inbound share and never affect other peers or the event monitor.
"""

from __future__ import annotations


class EmberError(Exception):
    """Base class for all node errors."""


class DomainError(EmberError, ArithmeticError):
    """A field arithmetic precondition was violated (e.g. inverse of zero)."""


class InvalidParameters(EmberError, ValueError):
    """Threshold parameters or share inputs are malformed."""


class InsufficientShares(EmberError, ValueError):
    """Fewer than threshold distinct-index shares were supplied."""


class DirectoryUnavailable(EmberError):
    """The operator registry could not be queried after bounded retries."""


class QuorumUnreachable(EmberError):
    """Fewer usable peers than the threshold; nothing was distributed."""


class PartialFailure(EmberError):
    """Distribution ran but fewer than threshold shares were delivered."""


class PeerKeyMismatch(EmberError):
    """A peer's advertised public key is malformed or does not hash to its operator address."""


class MalformedEvent(EmberError, ValueError):
    """A selection event log could not be decoded."""


class ShareRejected(EmberError):
    """An inbound share was refused by the follower receiver."""


class DuplicateShare(ShareRejected):
    """A share is already stored for this epoch.

    matches_stored tells the sender whether its copy is identical to the one
    held, which is how a retried delivery learns its first attempt landed.
    """

    def __init__(self, message: str, *, matches_stored: bool = False) -> None:
        super().__init__(message)
        self.matches_stored = matches_stored


class StaleShare(ShareRejected):
    """The share belongs to an epoch older than the newest stored one."""


class InvalidShare(ShareRejected, ValueError):
    """Share index or value is out of range, or addressed to another operator."""


class InvalidSignature(ShareRejected):
    """The share envelope signature does not match the claimed sender."""


class UnexpectedSender(ShareRejected):
    """The sender is not the leader recorded for the share's epoch."""

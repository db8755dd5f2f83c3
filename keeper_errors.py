"""
Error taxonomy for the keeper.

Every error here is scoped to one pool, auction or loan. The keeper loop logs
it and moves on; nothing in this module is meant to stop the process.
"""


class KeeperError(Exception):
    """Base class for keeper failures."""


class ConfigError(KeeperError):
    """Keeper config file is missing a field or carries a bad value."""


class TransientRpcError(KeeperError):
    """Node hiccup or nonce drift. The sequencer resyncs and retries once."""


class SubgraphError(KeeperError):
    """Ledger query failed or returned GraphQL errors."""


class MarketDataError(KeeperError):
    """A single remote price source failed or returned an unusable value."""


class PriceUnavailable(KeeperError):
    """Every configured price source failed."""

    def __init__(self, message, attempts=None):
        super().__init__(message)
        self.attempts = attempts or []


class ApprovalFailure(KeeperError):
    """Allowance or balance could not cover the pending action."""


class TransactionReverted(KeeperError):
    """Transaction mined with status 0, or reverted during gas estimation."""

    def __init__(self, message, tx_hash=None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeout(KeeperError):
    """Receipt did not arrive in time. Never assumed to be a success."""

    def __init__(self, message, tx_hash=None):
        super().__init__(message)
        self.tx_hash = tx_hash

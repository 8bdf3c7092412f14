"""Exception types raised by the ledger core."""


class LedgerError(Exception):
    """Base class for chain-state errors surfaced verbatim to callers."""


class ChainNotFoundError(LedgerError):
    def __init__(self, vehicle_id: str):
        super().__init__("vehicle chain not found")
        self.vehicle_id = vehicle_id


class DuplicateChainError(LedgerError):
    def __init__(self, vehicle_id: str):
        super().__init__(f"chain already exists for vehicle {vehicle_id}")
        self.vehicle_id = vehicle_id


class OracleUnavailableError(LedgerError):
    """The cross-app dedup oracle could not be reached. Not a fraud signal."""


class CrossAppClaimError(LedgerError):
    """Another application claimed the reading between check() and record()."""

    def __init__(self, fingerprint: str, source: str, tx_hash: str):
        super().__init__(f"reading already used by {source}")
        self.fingerprint = fingerprint
        self.source      = source
        self.tx_hash     = tx_hash

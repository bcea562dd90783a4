from __future__ import annotations


class MakerError(Exception):
    pass


class ConfigurationError(MakerError):
    def __init__(self, missing: list[str] | tuple[str, ...] = (), message: str = "") -> None:
        self.missing = tuple(missing)
        if not message:
            message = "missing required settings: " + ",".join(self.missing)
        super().__init__(message)


class ParseError(MakerError):
    pass


class PersistenceError(MakerError):
    pass


class EventSourceError(MakerError):
    pass


class BroadcastError(MakerError):
    """Raised by a broadcaster when one submission attempt does not land."""

    def __init__(self, message: str) -> None:
        self.message = str(message or "")
        super().__init__(self.message)


class TransactionError(MakerError):
    def __init__(self, message: str, attempts: int = 1) -> None:
        self.message = str(message or "")
        self.attempts = int(attempts)
        super().__init__(self.message)


class RetryableTransactionError(TransactionError):
    pass


class FatalTransactionError(TransactionError):
    pass

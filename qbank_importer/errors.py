from __future__ import annotations


class ImportAbort(Exception):
    """A run-terminal failure that carries every offending-row message."""

    label = "Import failed"

    def __init__(self, messages: list[str]):
        self.messages = list(messages)
        super().__init__(f"{self.label}: {len(self.messages)} error(s)")


class RowValidationError(ImportAbort):
    label = "Validation failed"


class DuplicateError(ImportAbort):
    def __init__(self, messages: list[str], scope: str):
        self.scope = scope  # "file" | "database"
        self.label = (
            "Duplicates found in file" if scope == "file"
            else "Duplicates found in database"
        )
        super().__init__(messages)


class TransactionError(Exception):
    """Commit failed; the transaction was rolled back."""


class AiDispatchError(Exception):
    """The completion service failed or returned something unusable."""


class SessionNotFoundError(KeyError):
    pass

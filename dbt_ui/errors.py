"""Exception hierarchy shared by the build, query and adapter layers."""

from __future__ import annotations


class DbtUiError(Exception):
    """Base class for every error raised by dbt-ui."""


class ManifestNotFoundError(DbtUiError):
    """The manifest file does not exist at build time."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(
            f"Manifest not found at {path}. "
            "Check the path or run 'dbt docs generate' to produce it."
        )


class ManifestParseError(DbtUiError):
    """The manifest exists but is not valid JSON or has an unexpected shape."""


class IngestionError(DbtUiError):
    """Writing the manifest into the store failed; the build was rolled back."""


class SchemaError(IngestionError):
    """The engine rejected the schema DDL."""


class StoreOpenError(DbtUiError):
    """The store file could not be opened or inspected."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to open database at {path}: {reason}")


class NotFoundError(DbtUiError):
    """A point lookup referenced an identifier that is not in the store."""

    def __init__(self, unique_id: str) -> None:
        self.unique_id = unique_id
        super().__init__(f"Model '{unique_id}' not found.")

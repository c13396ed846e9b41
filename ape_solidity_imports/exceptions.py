from typing import Optional

from ape.exceptions import ApeException, CompilerError
from ape.logging import LogLevel, logger
from solcx.exceptions import SolcError


class SolidityImportsError(ApeException):
    """
    Base class for all errors raised while resolving imports
    or compiling a multi-file source tree.
    """

    status_code: int = 500


class InvalidInputError(SolidityImportsError, ValueError):
    """
    Raised when the request is missing required fields or the
    main file is not part of the given files.
    """

    status_code = 400


class InputTooLargeError(SolidityImportsError, ValueError):
    """
    Raised when a safety limit (file count, file size, aggregate size
    or number of external imports) is exceeded. Always raised
    before any network activity.
    """

    status_code = 400

    def __init__(self, message: str, limit: int, actual: int):
        self.limit = limit
        self.actual = actual
        super().__init__(message)


class UnsupportedImportError(SolidityImportsError):
    status_code = 400

    def __init__(self, import_path: str):
        self.import_path = import_path
        super().__init__(f"Unsupported external library: {import_path}")


class LocalImportNotFoundError(SolidityImportsError):
    status_code = 400

    def __init__(self, import_path: str):
        self.import_path = import_path
        super().__init__(
            f"Relative import {import_path} not found. Make sure the file exists in your project."
        )


class FetchError(SolidityImportsError):
    """
    Raised when content for a URL cannot be retrieved.
    """

    status_code = 502

    def __init__(self, url: str, cause: str):
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to fetch '{url}': {cause}")

    @property
    def retryable(self) -> bool:
        return True


class FetchTimeoutError(FetchError):
    status_code = 504

    def __init__(self, url: str, timeout: float):
        self.timeout = timeout
        super().__init__(url, f"Request timed out after {timeout}s")


class FetchConnectionError(FetchError):
    pass


class FetchHttpError(FetchError):
    def __init__(self, url: str, status: int):
        self.status = status
        super().__init__(url, f"HTTP status {status}")

    @property
    def retryable(self) -> bool:
        # Client errors are permanent, except for timeouts and rate limits.
        return self.status >= 500 or self.status in (408, 429)


class AllVersionsFailedError(FetchError):
    """
    Raised when every registered version of a library, and any special-case
    fallback URL, failed for one import path. The first error is kept
    as the cause.
    """

    def __init__(self, import_path: str, error: FetchError, attempted: Optional[list[str]] = None):
        self.import_path = import_path
        self.error = error
        self.attempted = attempted or []
        SolidityImportsError.__init__(
            self,
            f"Failed to fetch {import_path} from all sources "
            f"({len(self.attempted)} attempted): {error}",
        )
        self.url = error.url
        self.cause = error.cause


class IterationLimitExceededError(SolidityImportsError):
    """
    Recorded (not raised) when the import queue hits its safety ceiling,
    which usually means circular or exploding nested imports.
    """

    def __init__(self, limit: int, remaining: int):
        self.limit = limit
        self.remaining = remaining
        super().__init__(
            f"Reached maximum iterations ({limit}) while resolving imports "
            f"with {remaining} import(s) still queued. "
            "This may indicate circular dependencies."
        )


class ResolutionTimeoutError(SolidityImportsError):
    status_code = 504

    def __init__(self, timeout: float, unresolved: Optional[list[str]] = None):
        self.timeout = timeout
        self.unresolved = unresolved or []
        super().__init__(f"Import resolution timed out after {timeout}s.")


class CompilationTimeoutError(SolidityImportsError):
    status_code = 504

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Compilation timed out after {timeout}s.")


class CompilationFailedError(SolidityImportsError):
    """
    Raised when the compiler reports errors, or produced nothing usable
    for the main file.
    """

    status_code = 400

    def __init__(
        self,
        message: str,
        errors: Optional[list[dict]] = None,
        warnings: Optional[list[dict]] = None,
        unresolved: Optional[list[str]] = None,
    ):
        self.errors = errors or []
        self.warnings = warnings or []
        self.unresolved = unresolved or []
        super().__init__(message)


class SolcInstallError(CompilerError):
    def __init__(self):
        super().__init__(
            "No applicable 'solc' versions installed and "
            "unable to install the required version. "
            "Check your internet connection or set a version in the config."
        )


class SolcCompileError(CompilerError):
    """
    Wraps a ``solcx`` failure. The full command and process output
    are only shown when logging at DEBUG.
    """

    status_code = 500

    def __init__(self, solc_error: SolcError):
        self.solc_error = solc_error
        super().__init__(solc_error.message)

    def __str__(self) -> str:
        if logger.level <= LogLevel.DEBUG.value:
            return str(self.solc_error)

        return self.solc_error.message

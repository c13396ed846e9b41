import pytest
from ape.logging import logger
from solcx.exceptions import SolcError

from ape_solidity_imports.exceptions import (
    AllVersionsFailedError,
    FetchHttpError,
    FetchTimeoutError,
    InputTooLargeError,
    SolcCompileError,
    UnsupportedImportError,
)

MESSAGE = "__message__"
COMMAND = ["solc", "command"]
RETURN_CODE = 123
STDOUT_DATA = "<stdout data>"
STDERR_DATA = "<stderr data>"


@pytest.fixture(scope="module")
def solc_error():
    return SolcError(
        message=MESSAGE,
        command=COMMAND,
        return_code=RETURN_CODE,
        stdout_data=STDOUT_DATA,
        stderr_data=STDERR_DATA,
    )


def test_solc_compile_error(solc_error):
    error = SolcCompileError(solc_error)
    actual = str(error)
    assert MESSAGE in actual
    assert f"{RETURN_CODE}" not in actual
    assert " ".join(COMMAND) not in actual
    assert STDOUT_DATA not in actual
    assert STDERR_DATA not in actual


def test_solc_compile_error_verbose(solc_error):
    logger.set_level("DEBUG")
    error = SolcCompileError(solc_error)
    actual = str(error)
    assert MESSAGE in actual
    assert f"{RETURN_CODE}" in actual
    assert " ".join(COMMAND) in actual
    assert STDOUT_DATA in actual
    assert STDERR_DATA in actual
    logger.set_level("INFO")


@pytest.mark.parametrize("status", (500, 502, 503, 408, 429))
def test_fetch_http_error_retryable(status):
    assert FetchHttpError("https://example.com/A.sol", status).retryable


@pytest.mark.parametrize("status", (400, 401, 403, 404))
def test_fetch_http_error_not_retryable(status):
    assert not FetchHttpError("https://example.com/A.sol", status).retryable


def test_fetch_timeout_error():
    error = FetchTimeoutError("https://example.com/A.sol", 10)
    assert error.retryable
    assert error.status_code == 504
    assert "timed out" in str(error)


def test_all_versions_failed_error_keeps_first_error():
    first = FetchHttpError("https://example.com/v5/A.sol", 404)
    error = AllVersionsFailedError(
        "@openzeppelin/contracts/A.sol",
        first,
        attempted=["https://example.com/v5/A.sol", "https://example.com/v4/A.sol"],
    )
    assert error.error is first
    assert error.url == first.url
    assert error.cause == first.cause
    assert "@openzeppelin/contracts/A.sol" in str(error)
    assert "2 attempted" in str(error)
    assert error.status_code == 502


def test_status_codes():
    assert UnsupportedImportError("@foo/bar/A.sol").status_code == 400
    assert InputTooLargeError("Too many files", limit=1, actual=2).status_code == 400


def test_input_too_large_error_is_value_error():
    with pytest.raises(ValueError, match="Too many files"):
        raise InputTooLargeError("Too many files (2). Maximum is 1", limit=1, actual=2)

import time
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Optional, Protocol, Union

from ape.api import PluginConfig
from ape.exceptions import ApeException
from ape.logging import logger
from ape.utils import ManagerAccessMixin, cached_property
from eth_utils import add_0x_prefix
from ethpm_types import ContractType
from packaging.version import Version
from pydantic import model_validator
from requests.exceptions import ConnectionError
from solcx import (
    compile_standard,
    get_installable_solc_versions,
    get_installed_solc_versions,
    install_solc,
)
from solcx.exceptions import SolcError
from solcx.install import get_executable

from ape_solidity_imports._utils import (
    OUTPUT_SELECTION,
    get_import_paths,
    get_pragma_spec_from_str,
    get_utf8_size,
    is_relative_import,
    load_dict,
    resolve_relative_path,
    select_version,
    strip_commit_hash,
)
from ape_solidity_imports.exceptions import (
    CompilationFailedError,
    CompilationTimeoutError,
    InputTooLargeError,
    InvalidInputError,
    SolcCompileError,
    SolcInstallError,
    SolidityImportsError,
)
from ape_solidity_imports.fetcher import ContentCache, Fetcher, content_cache
from ape_solidity_imports.lookup import ImportLookup
from ape_solidity_imports.models import (
    CompilationResult,
    CompilationStats,
    CompiledContract,
    ErrorResponse,
    ResolutionResult,
)
from ape_solidity_imports.registry import LibraryRegistry, LibrarySpec
from ape_solidity_imports.resolver import ResolutionEngine

DEFAULT_OPTIMIZATION_RUNS = 200
DEFAULT_EVM_VERSION = "london"


class SolidityImportsConfig(PluginConfig):
    """
    Configure the ape-solidity-imports plugin.
    """

    max_files: int = 100
    """
    The most files a single request may contain.
    """

    max_file_size: int = 500 * 1024
    """
    The largest a single file may be, in bytes.
    """

    max_total_size: int = 2 * 1024 * 1024
    """
    The largest all files together may be, in bytes.
    """

    max_imports: int = 200
    """
    The most distinct external imports to resolve. The import queue
    also stops after ``max_imports * iteration_factor`` iterations.
    """

    iteration_factor: int = 2

    max_fetch_retries: int = 3
    """
    Retries per fetch, after the first attempt.
    """

    fetch_timeout: float = 10.0
    """
    Seconds to wait for each fetch attempt.
    """

    fetch_backoff: float = 1.0
    """
    Seconds to wait before the first retry. Doubles for each retry after.
    """

    compile_timeout: float = 30.0
    """
    Seconds a whole request (resolution and compilation) may take.
    """

    max_workers: int = 1
    """
    How many imports of different libraries to fetch at once.
    Imports from the same library are always fetched one at a time.
    """

    libraries: list[LibrarySpec] = []
    """
    Additional libraries, or replacements for built-in ones (by prefix).
    """

    version: Optional[str] = None
    """
    Hardcode a Solidity version to use. When not set, the version
    is selected from the main file's pragma.
    """

    optimize: bool = True
    optimization_runs: int = DEFAULT_OPTIMIZATION_RUNS
    evm_version: Optional[str] = DEFAULT_EVM_VERSION

    @model_validator(mode="before")
    def validate_libraries(cls, value):
        if isinstance(value, dict) and isinstance(libraries := value.get("libraries"), dict):
            # Allow libraries keyed by prefix.
            value = {
                **value,
                "libraries": [{"prefix": prefix, **spec} for prefix, spec in libraries.items()],
            }

        return value

    def get_settings(self) -> dict:
        settings: dict[str, Any] = {
            "optimizer": {"enabled": self.optimize, "runs": self.optimization_runs},
            "outputSelection": {"*": {"*": OUTPUT_SELECTION}},
        }
        if evm_version := self.evm_version:
            settings["evmVersion"] = evm_version

        return settings


def validate_files(files: Any, main_file: Any, config: SolidityImportsConfig):
    """
    Check a request against the safety limits, before doing anything else.

    Raises:
        :class:`~ape_solidity_imports.exceptions.InvalidInputError`: When fields are
          missing or the main file is not one of the files.
        :class:`~ape_solidity_imports.exceptions.InputTooLargeError`: When a limit is
          exceeded.
    """
    if not files or not main_file:
        raise InvalidInputError("Missing required fields: files and mainFile")

    elif not isinstance(files, Mapping) or not all(isinstance(c, str) for c in files.values()):
        raise InvalidInputError("Files must map each file path to its source code.")

    file_count = len(files)
    if file_count > config.max_files:
        logger.error(f"Too many files: {file_count}")
        raise InputTooLargeError(
            f"Too many files ({file_count}). Maximum is {config.max_files}",
            limit=config.max_files,
            actual=file_count,
        )

    total_size = 0
    for path, content in files.items():
        size = get_utf8_size(content)
        total_size += size
        if size > config.max_file_size:
            logger.error(f"File too large: {path} ({size} bytes)")
            raise InputTooLargeError(
                f"File {path} is too large ({size} bytes). "
                f"Maximum is {config.max_file_size} bytes",
                limit=config.max_file_size,
                actual=size,
            )

    if total_size > config.max_total_size:
        logger.error(f"Total size too large: {total_size}")
        raise InputTooLargeError(
            f"Total size of all files ({total_size} bytes) exceeds "
            f"maximum of {config.max_total_size} bytes",
            limit=config.max_total_size,
            actual=total_size,
        )

    if main_file not in files:
        logger.error(f"Main file not found: {main_file}")
        raise InvalidInputError(f"Main file {main_file} not found in provided files")


def collect_sources(
    sources: Mapping[str, str], lookup: Callable
) -> tuple[dict[str, str], list[dict]]:
    """
    Add every source the given sources import, directly or not, using the
    lookup for any import missing from ``sources``. Relative imports are keyed
    the way ``solc`` names them: relative to the importing source unit.

    Returns:
        tuple[dict[str, str], list[dict]]: The sources, and ``solc``-style
        error diagnostics for imports the lookup could not find.
    """
    collected = dict(sources)
    errors: list[dict] = []
    missing: set[str] = set()
    queue = deque(collected)
    while queue:
        source_id = queue.popleft()
        for import_path in get_import_paths(collected[source_id]):
            key = (
                resolve_relative_path(source_id, import_path)
                if is_relative_import(import_path)
                else import_path
            )
            if key in collected or key in missing:
                continue

            result = lookup(key)
            if not result.found and key != import_path and (aliased := lookup(import_path)).found:
                # Relative imports matched to a local file by name.
                result = aliased

            if result.found:
                collected[key] = result.contents
                queue.append(key)
                continue

            missing.add(key)
            errors.append(
                {
                    "component": "general",
                    "severity": "error",
                    "type": "ParserError",
                    "message": result.error,
                    "formattedMessage": f"ParserError: {result.error}\n --> {source_id}\n",
                    "sourceLocation": {"file": source_id, "start": -1, "end": -1},
                }
            )

    return collected, errors


class SourceCompiler(Protocol):
    """
    The compiler collaborator: takes every source and the lookup for
    imports, and returns ``solc`` standard-JSON output.
    """

    def compile(
        self,
        sources: dict[str, str],
        lookup: ImportLookup,
        settings: dict,
        main_file: Optional[str] = None,
    ) -> dict: ...


class SolcxCompiler:
    """
    Compiles with ``solc`` binaries managed by ``py-solc-x``,
    installing the needed version when missing.
    """

    def __init__(self, version: Optional[Union[str, Version]] = None):
        self.version = version

    @cached_property
    def available_versions(self) -> list[Version]:
        try:
            return get_installable_solc_versions()
        except ConnectionError:
            # Compiling offline
            logger.warning("Internet connection required to fetch installable Solidity versions.")
            return []

    @property
    def installed_versions(self) -> list[Version]:
        return get_installed_solc_versions()

    def get_version(self, source: Optional[str] = None) -> Version:
        """
        Get the ``solc`` version to compile the given (main) source with,
        installing it if needed. A configured version always wins.
        """
        if configured := self.version:
            version = strip_commit_hash(configured)
            if version not in self.installed_versions:
                install_solc(version, show_progress=False)

            return version

        elif source and (pragma := get_pragma_spec_from_str(source)):
            if selected := select_version(pragma, self.installed_versions):
                return selected

            elif selected := select_version(pragma, self.available_versions):
                install_solc(selected, show_progress=False)
                return selected

            raise SolcInstallError()

        elif installed := self.installed_versions:
            return max(installed)

        elif available := self.available_versions:
            latest = max(available)
            install_solc(latest, show_progress=False)
            return latest

        raise SolcInstallError()

    def compile(
        self,
        sources: dict[str, str],
        lookup: ImportLookup,
        settings: dict,
        main_file: Optional[str] = None,
    ) -> dict:
        sources, lookup_errors = collect_sources(sources, lookup)
        version = self.get_version(sources.get(main_file) if main_file else None)
        input_json = {
            "language": "Solidity",
            "sources": {k: {"content": v} for k, v in sources.items()},
            "settings": settings,
        }
        try:
            output = compile_standard(
                input_json,
                solc_binary=get_executable(version=version),
                solc_version=version,
                allow_empty=True,
            )
        except SolcError as err:
            if not (diagnostics := getattr(err, "error_dict", None)):
                raise SolcCompileError(err) from err

            # Compiled, but the sources have errors.
            output = {"errors": diagnostics}

        output["errors"] = [*lookup_errors, *output.get("errors", [])]
        output["compilerVersion"] = f"{version}"
        return output


class SolidityImportCompiler(ManagerAccessMixin):
    """
    Compiles a multi-file Solidity source tree whose imports may refer to
    external libraries that are not part of it.

    Usage example::

        compiler = SolidityImportCompiler()
        result = compiler.compile(
            {"contracts/Token.sol": source_code},
            "contracts/Token.sol",
        )
    """

    def __init__(
        self,
        config: Optional[SolidityImportsConfig] = None,
        registry: Optional[LibraryRegistry] = None,
        cache: Optional[ContentCache] = None,
        fetcher: Optional[Fetcher] = None,
        compiler: Optional[SourceCompiler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._registry = registry
        self._fetcher = fetcher
        self._compiler = compiler
        self.cache = content_cache if cache is None else cache
        self.clock = clock

    @property
    def config(self) -> SolidityImportsConfig:
        if self._config is None:
            self._config = self.config_manager.get_config("solidity_imports")

        return self._config

    @cached_property
    def registry(self) -> LibraryRegistry:
        return self._registry or LibraryRegistry.from_config(self.config.libraries)

    @cached_property
    def engine(self) -> ResolutionEngine:
        # Shared by all requests so per-library locking spans requests.
        return ResolutionEngine.from_config(
            self.config,
            registry=self.registry,
            cache=self.cache,
            fetcher=self._fetcher,
            clock=self.clock,
        )

    @cached_property
    def compiler(self) -> SourceCompiler:
        return self._compiler or SolcxCompiler(version=self.config.version)

    def resolve(
        self,
        files: Mapping[str, str],
        main_file: str,
        deadline: Optional[float] = None,
    ) -> ResolutionResult:
        """
        Validate the files and resolve all of their imports,
        without compiling.
        """
        validate_files(files, main_file, self.config)
        return self.engine.resolve(files, deadline=deadline)

    def create_lookup(self, result: ResolutionResult) -> ImportLookup:
        return ImportLookup.from_result(result, cache=self.cache, registry=self.registry)

    def compile(self, files: Mapping[str, str], main_file: str) -> CompilationResult:
        """
        Resolve the imports of the given files and compile them.

        Args:
            files (Mapping[str, str]): File path to source code.
            main_file (str): The file with the contract to return.

        Raises:
            :class:`~ape_solidity_imports.exceptions.SolidityImportsError`: When the
              input is invalid, time runs out or compiling fails.

        Returns:
            :class:`~ape_solidity_imports.models.CompilationResult`
        """
        logger.info("Received compilation request")
        start_time = self.clock()
        deadline = start_time + self.config.compile_timeout
        resolution = self.resolve(files, main_file, deadline=deadline)
        lookup = self.create_lookup(resolution)

        logger.info(f"Compiling {len(resolution.files)} files...")
        compile_start = self.clock()
        output = self._run_compiler(resolution.files, lookup, main_file, deadline)
        compilation_time = self.clock() - compile_start

        diagnostics = output.get("errors") or []
        errors = [e for e in diagnostics if e.get("severity") == "error"]
        warnings = [e for e in diagnostics if e.get("severity") == "warning"]
        unresolved = resolution.unresolved
        if errors:
            logger.error(f"Compilation failed with {len(errors)} errors")
            raise CompilationFailedError(
                "Compilation failed with errors",
                errors=errors,
                warnings=warnings,
                unresolved=unresolved,
            )

        elif warnings:
            logger.warning(f"Compilation succeeded with {len(warnings)} warnings")

        if not (contracts := output.get("contracts")):
            logger.error("Compilation did not produce any output")
            raise CompilationFailedError(
                "Compilation did not produce any output", warnings=warnings, unresolved=unresolved
            )

        elif (main_contracts := contracts.get(main_file)) is None:
            raise CompilationFailedError(
                f"Main file {main_file} was not found in compilation output",
                warnings=warnings,
                unresolved=unresolved,
            )

        elif not (contract_name := next(iter(main_contracts), None)):
            raise CompilationFailedError(
                "No contracts found in main file", warnings=warnings, unresolved=unresolved
            )

        main_contract = main_contracts[contract_name]
        evm_data = main_contract["evm"]
        total_time = self.clock() - start_time
        stats = CompilationStats(
            **resolution.stats.model_dump(),
            compilation_time=compilation_time,
            total_time=total_time,
        )
        logger.info(f"Compilation completed in {int(total_time * 1000)}ms")
        return CompilationResult(
            contract_name=contract_name,
            abi=main_contract.get("abi", []),
            bytecode=add_0x_prefix(evm_data["bytecode"]["object"]),
            deployed_bytecode_size=len(evm_data["deployedBytecode"]["object"]) // 2,
            compiler_version=output.get("compilerVersion", "unknown"),
            contracts={
                name: CompiledContract(
                    abi=data.get("abi", []),
                    bytecode=add_0x_prefix(data["evm"]["bytecode"]["object"]),
                )
                for contracts_out in contracts.values()
                for name, data in contracts_out.items()
            },
            contract_types=_get_contract_types(contracts),
            warnings=warnings,
            unresolved_imports=unresolved,
            stats=stats,
        )

    def handle(self, payload: Mapping) -> tuple[int, dict]:
        """
        Handle a compile request with ``files`` and ``mainFile``.

        Returns:
            tuple[int, dict]: An HTTP-style status code and a JSON-ready body.
        """
        files = payload.get("files")
        main_file = payload.get("mainFile", payload.get("main_file"))
        try:
            result = self.compile(files, main_file)  # type: ignore[arg-type]
        except SolidityImportsError as err:
            return err.status_code, _get_error_response(err, err.status_code).model_dump()
        except ApeException as err:
            # Compiler installation or binary failures.
            logger.error(f"Compilation error: {err}")
            return 500, _get_error_response(err, 500).model_dump()
        except Exception as err:
            logger.error(f"Error compiling contracts: {err}")
            response = ErrorResponse(error=f"{err}" or "Unknown error compiling contracts")
            return 500, response.model_dump()

        return 200, result.model_dump(mode="json")

    def _run_compiler(
        self, sources: dict[str, str], lookup: ImportLookup, main_file: str, deadline: float
    ) -> dict:
        timeout = self.config.compile_timeout
        if (remaining := deadline - self.clock()) <= 0:
            raise CompilationTimeoutError(timeout)

        settings = self.config.get_settings()
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(
            self.compiler.compile, sources, lookup, settings, main_file=main_file
        )
        try:
            return future.result(timeout=remaining)
        except FuturesTimeoutError as err:
            logger.error(f"Compilation timed out after {timeout}s")
            raise CompilationTimeoutError(timeout) from err
        finally:
            executor.shutdown(wait=False)


def _get_error_response(err: Exception, status_code: int) -> ErrorResponse:
    return ErrorResponse(
        error=f"{err}",
        status_code=status_code,
        errors=getattr(err, "errors", []),
        warnings=getattr(err, "warnings", []),
        unresolved_imports=getattr(err, "unresolved", []),
    )


def _get_contract_types(contracts: dict) -> dict[str, ContractType]:
    contract_types: dict[str, ContractType] = {}
    for source_id, contracts_out in contracts.items():
        for contract_name, ct_data in contracts_out.items():
            evm_data = ct_data["evm"]

            # NOTE: This sounds backwards, but it isn't...
            #  The "deployment_bytecode" is the same as the "bytecode",
            #  and the "deployedBytecode" is the same as the "runtimeBytecode".
            deployment_bytecode = add_0x_prefix(evm_data["bytecode"]["object"])
            runtime_bytecode = add_0x_prefix(evm_data["deployedBytecode"]["object"])

            # Skip library linking.
            if "__$" in deployment_bytecode or "__$" in runtime_bytecode:
                logger.warning(
                    f"Unable to create contract type {contract_name} - missing libraries."
                )
                continue

            contract_types[contract_name] = ContractType.model_validate(
                {
                    "contractName": contract_name,
                    "sourceId": source_id,
                    "abi": ct_data.get("abi", []),
                    "deploymentBytecode": {"bytecode": deployment_bytecode},
                    "runtimeBytecode": {"bytecode": runtime_bytecode},
                    "userdoc": load_dict(ct_data.get("userdoc", {})),
                    "devdoc": load_dict(ct_data.get("devdoc", {})),
                }
            )

    return contract_types

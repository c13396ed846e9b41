import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from ape.logging import logger

from ape_solidity_imports._models import ResolutionState
from ape_solidity_imports._utils import (
    Extension,
    get_basename,
    get_import_paths,
    is_relative_import,
    resolve_relative_path,
    strip_leading_slash,
)
from ape_solidity_imports.exceptions import (
    AllVersionsFailedError,
    FetchError,
    InputTooLargeError,
    IterationLimitExceededError,
    LocalImportNotFoundError,
    ResolutionTimeoutError,
    SolidityImportsError,
    UnsupportedImportError,
)
from ape_solidity_imports.fetcher import ContentCache, Fetcher, content_cache
from ape_solidity_imports.models import ResolutionResult, ResolutionStats
from ape_solidity_imports.registry import LibraryRegistry, LibrarySpec
from ape_solidity_imports.versions import VersionDetector, VersionPreference

# Errors that only fail the one import path.
PathError = Union[FetchError, UnsupportedImportError, LocalImportNotFoundError]

MAX_LOGGED_UNRESOLVED = 10


class LocalResolver:
    """
    Matches imports against the user's own files.

    Relative imports that are not found at their exact location are matched
    by filename, which is a heuristic: when several files share the name, the
    shortest source ID wins (then alphabetical order) and the ambiguity is
    recorded in :attr:`ambiguous`.
    """

    def __init__(self, files: Mapping[str, str], aliases: Optional[dict[str, str]] = None):
        self.files = files
        self.aliases: dict[str, str] = aliases if aliases is not None else {}
        self.ambiguous: dict[str, list[str]] = {}

    def resolve(self, import_path: str, importer: Optional[str] = None) -> Optional[str]:
        """
        Get the source ID of the local file an import refers to.

        Args:
            import_path (str): The import path as written.
            importer (Optional[str]): The source ID of the importing file.

        Returns:
            Optional[str]: ``None`` when the import is not a local file.
        """
        if import_path in self.files:
            return import_path

        elif (stripped := strip_leading_slash(import_path)) in self.files:
            return stripped

        elif import_path in self.aliases:
            return self.aliases[import_path]

        elif not is_relative_import(import_path):
            return None

        if importer and (candidate := resolve_relative_path(importer, import_path)) in self.files:
            return candidate

        return self._match_filename(import_path)

    def _match_filename(self, import_path: str) -> Optional[str]:
        file_name = get_basename(import_path)
        extension = Extension.SOL.value
        names = {file_name, file_name if file_name.endswith(extension) else file_name + extension}
        matches = sorted(
            (src_id for src_id in self.files if get_basename(src_id) in names),
            key=lambda src_id: (len(src_id), src_id),
        )
        if not matches:
            return None

        elif len(matches) > 1:
            logger.warning(
                f"Relative import {import_path} matches multiple files by name "
                f"({', '.join(matches)}). Using '{matches[0]}'."
            )
            self.ambiguous[import_path] = matches

        logger.info(f"Resolved relative import {import_path} to {matches[0]} by filename match")
        self.aliases[import_path] = matches[0]
        return matches[0]


class ResolutionEngine:
    """
    Resolves every external import reachable from the user's files by
    draining a breadth-first queue: fetching each import, then queuing the
    imports found in the fetched content.

    The registry, cache and fetcher may be shared between requests;
    everything else about a pass lives in its own
    :class:`~ape_solidity_imports._models.ResolutionState`.
    """

    def __init__(
        self,
        registry: Optional[LibraryRegistry] = None,
        cache: Optional[ContentCache] = None,
        fetcher: Optional[Fetcher] = None,
        max_imports: int = 200,
        iteration_factor: int = 2,
        max_workers: int = 1,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry or LibraryRegistry()
        self.cache = content_cache if cache is None else cache
        self.fetcher = fetcher or Fetcher()
        self.max_imports = max_imports
        self.iteration_factor = iteration_factor
        self.max_workers = max(1, max_workers)
        self.timeout = timeout
        self.clock = clock

        # Single-flight per library prefix, so only one fetch at a time
        # can discover which version of a library works.
        self._prefix_locks: dict[str, threading.Lock] = {}
        self._prefix_locks_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config,
        registry: Optional[LibraryRegistry] = None,
        cache: Optional[ContentCache] = None,
        fetcher: Optional[Fetcher] = None,
        **kwargs,
    ) -> "ResolutionEngine":
        return cls(
            registry=registry or LibraryRegistry.from_config(config.libraries),
            cache=cache,
            fetcher=fetcher or Fetcher.from_config(config),
            max_imports=config.max_imports,
            iteration_factor=config.iteration_factor,
            max_workers=config.max_workers,
            timeout=config.compile_timeout,
            **kwargs,
        )

    @property
    def max_iterations(self) -> int:
        return self.max_imports * self.iteration_factor

    def resolve(
        self,
        files: Mapping[str, str],
        preference: Optional[VersionPreference] = None,
        deadline: Optional[float] = None,
    ) -> ResolutionResult:
        """
        Resolve all imports of the given files.

        Args:
            files (Mapping[str, str]): Source ID to source code, in a stable order.
            preference (Optional[:class:`~ape_solidity_imports.versions.VersionPreference`]):
              Library versions to use. Detected from ``files`` when not given.
            deadline (Optional[float]): Absolute time (of ``clock``) to give up at.
              Defaults to ``timeout`` seconds from now, when a timeout is set.

        Raises:
            :class:`~ape_solidity_imports.exceptions.InputTooLargeError`: When there
              are more external imports than ``max_imports``. Raised before fetching.
            :class:`~ape_solidity_imports.exceptions.ResolutionTimeoutError`: When
              the deadline passes.

        Returns:
            :class:`~ape_solidity_imports.models.ResolutionResult`
        """
        if deadline is None and self.timeout is not None:
            deadline = self.clock() + self.timeout

        if preference is None:
            preference = VersionDetector(self.registry).detect(files)

        state = ResolutionState()
        local = LocalResolver(files, aliases=state.path_aliases)
        self._seed(files, state, local)
        if len(state.discovered) > self.max_imports:
            count = len(state.discovered)
            logger.error(f"Too many imports: {count}")
            raise InputTooLargeError(
                f"Too many imports ({count}). Maximum is {self.max_imports}",
                limit=self.max_imports,
                actual=count,
            )

        logger.info(f"Found {len(state.discovered)} external imports to resolve")
        fetched: dict[str, str] = {}
        warnings: list[str] = []
        queue = deque(state.discovered)

        executor = None
        if self.max_workers > 1:
            executor = ThreadPoolExecutor(max_workers=self.max_workers)

        try:
            if limit_error := self._drain(
                queue, state, local, preference, fetched, deadline, executor=executor
            ):
                logger.warning(str(limit_error))
                warnings.append(str(limit_error))

        finally:
            if executor is not None:
                executor.shutdown(wait=False)

        for import_path, matches in local.ambiguous.items():
            warnings.append(
                f"Relative import {import_path} matched multiple files ({', '.join(matches)}); "
                f"used '{matches[0]}'."
            )

        unresolved = state.unresolved
        if unresolved:
            logger.warning(f"{len(unresolved)} imports could not be resolved")
            for import_path in unresolved[:MAX_LOGGED_UNRESOLVED]:
                logger.warning(f"  - {import_path}")

            if len(unresolved) > MAX_LOGGED_UNRESOLVED:
                logger.warning(f"  ... and {len(unresolved) - MAX_LOGGED_UNRESOLVED} more")

            warnings.extend(f"Unresolved import: {p}" for p in unresolved)

        logger.info(f"Resolved {len(state.resolved)} external imports")
        return ResolutionResult(
            # Fetched files never replace user files.
            files={**fetched, **files},
            stats=ResolutionStats(
                total_files=len(files),
                external_imports=len(state.discovered),
                resolved_imports=len(state.resolved),
                failed_imports=len(unresolved),
            ),
            unresolved=unresolved,
            failures={p: str(err) for p, err in state.failed.items()},
            warnings=warnings,
            versions=self._get_versions_used(state.resolved, preference),
            aliases=dict(state.path_aliases),
        )

    def _seed(self, files: Mapping[str, str], state: ResolutionState, local: LocalResolver):
        for source_id, code in files.items():
            for import_path in get_import_paths(code):
                if local.resolve(import_path, importer=source_id) is None:
                    state.discover(import_path)

    def _drain(
        self,
        queue: deque,
        state: ResolutionState,
        local: LocalResolver,
        preference: VersionPreference,
        fetched: dict[str, str],
        deadline: Optional[float],
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> Optional[IterationLimitExceededError]:
        iterations = 0
        while queue and iterations < self.max_iterations:
            self._check_deadline(deadline, state)

            batch: list[str] = []
            while queue and len(batch) < self.max_workers and iterations < self.max_iterations:
                import_path = queue.popleft()
                iterations += 1
                if state.is_done(import_path):
                    continue

                state.start(import_path)
                batch.append(import_path)

            if not batch:
                continue

            def process(path: str) -> Union[str, PathError]:
                return self._fetch_outcome(path, preference, deadline)

            try:
                outcomes = executor.map(process, batch) if executor else map(process, batch)
                for import_path, outcome in zip(batch, outcomes):
                    if isinstance(outcome, SolidityImportsError):
                        logger.error(f"Failed to resolve import {import_path}: {outcome}")
                        state.fail(import_path, outcome)
                        continue

                    fetched[import_path] = outcome
                    state.resolve(import_path)
                    if nested := self._get_nested_imports(import_path, outcome, state, local):
                        logger.info(f"Adding {len(nested)} new nested imports to queue")
                        queue.extend(nested)

            except ResolutionTimeoutError as err:
                # Raised mid-fetch, without this pass's state.
                raise ResolutionTimeoutError(
                    self.timeout or err.timeout, unresolved=state.unresolved
                ) from err

            finally:
                # Even when failing unexpectedly, so the state is not poisoned.
                for import_path in batch:
                    state.finish(import_path)

        if remaining := {p: None for p in queue if not state.is_done(p)}:
            return IterationLimitExceededError(self.max_iterations, len(remaining))

        return None

    def _get_nested_imports(
        self, import_path: str, content: str, state: ResolutionState, local: LocalResolver
    ) -> list[str]:
        nested_imports = get_import_paths(content)
        logger.debug(f"Found {len(nested_imports)} potential nested imports in {import_path}")
        new_imports: list[str] = []
        for nested_path in nested_imports:
            if is_relative_import(nested_path):
                resolved_path = resolve_relative_path(import_path, nested_path)
                if resolved_path == nested_path:
                    logger.warning(f"Invalid relative path: {nested_path} from {import_path}")

                nested_path = resolved_path

            if (
                nested_path == import_path
                or nested_path in local.files
                or nested_path in state.discovered
            ):
                continue

            state.discover(nested_path)
            new_imports.append(nested_path)

        return new_imports

    def _fetch_outcome(
        self, import_path: str, preference: VersionPreference, deadline: Optional[float]
    ) -> Union[str, PathError]:
        try:
            return self.fetch_import(import_path, preference, deadline=deadline)
        except (FetchError, UnsupportedImportError, LocalImportNotFoundError) as err:
            return err

    def fetch_import(
        self,
        import_path: str,
        preference: VersionPreference,
        deadline: Optional[float] = None,
    ) -> str:
        """
        Get the content of one bare import path, from the cache or by fetching
        it, trying each version of its library until one works.
        """
        if is_relative_import(import_path):
            raise LocalImportNotFoundError(import_path)

        elif not (library := self.registry.find(import_path)):
            logger.warning(f"Unhandled import: {import_path}")
            raise UnsupportedImportError(import_path)

        elif (content := self.cache.get(import_path)) is not None:
            logger.debug(f"Using cached {import_path}")
            return content

        elif failure := self.cache.get_failure(import_path):
            raise failure

        with self._get_prefix_lock(library.prefix):
            # Check again, in case it was fetched while waiting.
            if (content := self.cache.get(import_path)) is not None:
                return content

            try:
                content = self._fetch_with_fallback(import_path, library, preference, deadline)
            except FetchError as err:
                logger.error(f"Error fetching external library {import_path}: {err}")
                self.cache.record_failure(import_path, err)
                raise

            self.cache.put(import_path, content)
            return content

    def _fetch_with_fallback(
        self,
        import_path: str,
        library: LibrarySpec,
        preference: VersionPreference,
        deadline: Optional[float],
    ) -> str:
        relative_path = library.get_relative_path(import_path)
        version = preference.select(library)
        url = version.get_url(relative_path)
        attempted = [url]
        logger.info(f"Fetching {import_path} from {url}")
        try:
            content = self.fetcher.fetch(url, deadline=deadline, clock=self.clock)
        except FetchError as err:
            error = err
            logger.warning(f"Failed to fetch {import_path} with version {version.name}: {err}")
        else:
            logger.success(f"Fetched {import_path} using {version.name}")
            return content

        for fallback in library.versions:
            if fallback.name == version.name:
                # Already tried.
                continue

            self._check_deadline(deadline)
            fallback_url = fallback.get_url(relative_path)
            attempted.append(fallback_url)
            logger.info(f"Trying fallback: {fallback_url}")
            try:
                content = self.fetcher.fetch(fallback_url, deadline=deadline, clock=self.clock)
            except FetchError:
                logger.warning(f"Fallback fetch failed for {fallback_url}")
                continue

            logger.success(f"Fetched {import_path} using fallback version {fallback.name}")

            # Use the working version for the rest of the imports from this library.
            preference.set(library.prefix, fallback.name)
            return content

        if special_url := library.fallback_urls.get(relative_path):
            self._check_deadline(deadline)
            attempted.append(special_url)
            logger.info(f"Attempting special-case URL for {import_path}: {special_url}")
            try:
                content = self.fetcher.fetch(special_url, deadline=deadline, clock=self.clock)
            except FetchError:
                logger.warning(f"Special fetch for {import_path} failed")
            else:
                logger.success(f"Fetched {import_path} using special URL")
                return content

        raise AllVersionsFailedError(import_path, error, attempted=attempted)

    def _get_prefix_lock(self, prefix: str) -> threading.Lock:
        with self._prefix_locks_lock:
            if prefix not in self._prefix_locks:
                self._prefix_locks[prefix] = threading.Lock()

            return self._prefix_locks[prefix]

    def _check_deadline(self, deadline: Optional[float], state: Optional[ResolutionState] = None):
        if deadline is None or self.clock() < deadline:
            return

        logger.error("Import resolution timed out.")
        raise ResolutionTimeoutError(
            self.timeout or 0.0, unresolved=state.unresolved if state else None
        )

    def _get_versions_used(
        self, resolved: Iterable[str], preference: VersionPreference
    ) -> dict[str, str]:
        versions = {}
        for import_path in resolved:
            if library := self.registry.find(import_path):
                versions[library.prefix] = preference.select(library).name

        return versions

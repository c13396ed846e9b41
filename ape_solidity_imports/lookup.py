from collections.abc import Mapping
from typing import Optional

from ape.logging import logger

from ape_solidity_imports._utils import is_relative_import, strip_leading_slash
from ape_solidity_imports.fetcher import ContentCache, content_cache
from ape_solidity_imports.models import LookupResult, ResolutionResult
from ape_solidity_imports.registry import LibraryRegistry


class ImportLookup:
    """
    The import callback handed to the compiler once resolution is complete.
    Answers only from what is already in memory and never fetches.
    """

    def __init__(
        self,
        files: Mapping[str, str],
        aliases: Optional[Mapping[str, str]] = None,
        cache: Optional[ContentCache] = None,
        registry: Optional[LibraryRegistry] = None,
    ):
        self.files = files
        self.aliases = aliases or {}
        self.cache = content_cache if cache is None else cache
        self.registry = registry or LibraryRegistry()

    @classmethod
    def from_result(
        cls,
        result: ResolutionResult,
        cache: Optional[ContentCache] = None,
        registry: Optional[LibraryRegistry] = None,
    ) -> "ImportLookup":
        return cls(result.files, aliases=result.aliases, cache=cache, registry=registry)

    def __call__(self, import_path: str) -> LookupResult:
        return self.lookup(import_path)

    def __contains__(self, import_path: str) -> bool:
        return self.lookup(import_path).found

    def lookup(self, import_path: str) -> LookupResult:
        if (content := self._get_content(import_path)) is not None:
            return LookupResult(contents=content)

        error = self._get_error_message(import_path)
        logger.debug(error)
        return LookupResult(error=error)

    def _get_content(self, import_path: str) -> Optional[str]:
        if import_path in self.files:
            return self.files[import_path]

        elif (stripped := strip_leading_slash(import_path)) in self.files:
            return self.files[stripped]

        elif (alias := self.aliases.get(import_path)) and alias in self.files:
            return self.files[alias]

        return self.cache.get(import_path)

    def _get_error_message(self, import_path: str) -> str:
        if is_relative_import(import_path):
            return (
                f"Relative import {import_path} not found. "
                "Make sure the file exists in your project."
            )

        elif library := self.registry.find(import_path):
            return (
                f"External library not found: {import_path}. "
                f"Make sure the correct {library.display_name} version is used."
            )

        elif import_path.startswith("@"):
            return f"Unsupported external library: {import_path}."

        return f"Import not found: {import_path}"

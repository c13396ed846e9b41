import re
from collections.abc import Iterator, Mapping
from typing import Optional

from ape.logging import logger

from ape_solidity_imports.registry import LibraryRegistry, LibrarySpec, VersionSpec


class VersionPreference:
    """
    The version chosen per library prefix for one resolution pass.
    Set by the :class:`VersionDetector` up-front, or by a successful
    version fallback while fetching.
    """

    def __init__(self, preferences: Optional[Mapping[str, str]] = None):
        self._preferences: dict[str, str] = dict(preferences or {})

    def __getitem__(self, prefix: str) -> str:
        return self._preferences[prefix]

    def __contains__(self, prefix: str) -> bool:
        return prefix in self._preferences

    def __iter__(self) -> Iterator[str]:
        return iter(self._preferences)

    def __len__(self) -> int:
        return len(self._preferences)

    def __repr__(self) -> str:
        items = ", ".join(f"{k}={v}" for k, v in self._preferences.items())
        return f"<VersionPreference {items}>"

    def get(self, prefix: str) -> Optional[str]:
        return self._preferences.get(prefix)

    def set(self, prefix: str, version: str):
        if self._preferences.get(prefix) != version:
            logger.info(f"Using {prefix} version {version}")

        self._preferences[prefix] = version

    def select(self, library: LibrarySpec) -> VersionSpec:
        return library.get_version(self.get(library.prefix))

    def model_dump(self) -> dict[str, str]:
        return dict(self._preferences)


class VersionDetector:
    """
    Infers which version of each library the user code needs,
    using the markers registered on each version.
    """

    def __init__(self, registry: LibraryRegistry):
        self.registry = registry

    def detect(self, files: Mapping[str, str]) -> VersionPreference:
        """
        Scan every file, in order, for version markers.

        Args:
            files (Mapping[str, str]): Source ID to source code.

        Returns:
            :class:`~ape_solidity_imports.versions.VersionPreference`: The preferences,
            only containing the libraries a marker was found for.
        """
        preference = VersionPreference()
        logger.info("Analyzing code for library version requirements...")
        for source_id, code in files.items():
            for library in self.registry:
                if library.prefix not in code:
                    continue

                elif version := self.detect_library_version(library, code):
                    if (current := preference.get(library.prefix)) and current != version:
                        logger.warning(
                            f"'{source_id}' requires {library.prefix} version {version} "
                            f"but version {current} was detected before. Using {version}."
                        )

                    preference.set(library.prefix, version)

        return preference

    def detect_library_version(self, library: LibrarySpec, code: str) -> Optional[str]:
        for pattern, version_name in library.version_patterns.items():
            if re.search(pattern, code):
                return version_name

        for version in library.versions:
            if _has_marker(version, code):
                return version.name

        return None


def _has_marker(version: VersionSpec, code: str) -> bool:
    return any(f in code for f in version.features) or any(
        re.search(p, code) for p in version.patterns
    )

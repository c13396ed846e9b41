"""
The catalog of external libraries that imports can be fetched from.

Each library is identified by the import prefix users write in their source
code (``@openzeppelin/contracts``) and lists every version it can be fetched
at. Adding a library, or a version of one, is a matter of data: either extend
:data:`DEFAULT_LIBRARIES` or configure ``solidity_imports.libraries``.
"""

from collections.abc import Iterable, Iterator
from typing import Optional

from ape.utils.basemodel import BaseModel
from pydantic import ConfigDict, model_validator

OPENZEPPELIN_RAW = "https://raw.githubusercontent.com/OpenZeppelin/openzeppelin-contracts"
CHAINLINK_RAW = "https://raw.githubusercontent.com/smartcontractkit/chainlink"
UNISWAP_RAW = "https://raw.githubusercontent.com/Uniswap"


class VersionSpec(BaseModel):
    """
    One fetchable version of a library.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    """
    The name of the version, unique within its library, e.g. ``"5.0"``.
    """

    base_url: str
    """
    The content root. ``base_url + <path within library>`` is fetched.
    """

    branch: Optional[str] = None

    features: list[str] = []
    """
    Literal strings whose presence in user code implies this version.
    """

    patterns: list[str] = []
    """
    Regular expressions whose match in user code implies this version.
    """

    def get_url(self, relative_path: str) -> str:
        return f"{self.base_url}{relative_path}"


class LibrarySpec(BaseModel):
    """
    A registered external package family with one or more versions.
    """

    model_config = ConfigDict(frozen=True)

    prefix: str
    """
    The import prefix, such as ``@openzeppelin/contracts``.
    """

    name: str = ""
    url: Optional[str] = None

    versions: list[VersionSpec]
    """
    Every version, in fallback order.
    """

    default_version: str

    version_patterns: dict[str, str] = {}
    """
    Explicit version qualifiers, e.g. ``@openzeppelin/contracts@5``,
    mapped to the version they select.
    """

    fallback_urls: dict[str, str] = {}
    """
    Special-case URLs, keyed by the exact path within the library, tried
    when every version failed.
    """

    @model_validator(mode="after")
    def validate_versions(self):
        if not self.versions:
            raise ValueError(f"Library '{self.prefix}' must have at least one version.")

        names = [v.name for v in self.versions]
        if len(set(names)) != len(names):
            raise ValueError(f"Library '{self.prefix}' has duplicate version names.")

        elif self.default_version not in names:
            raise ValueError(
                f"Default version '{self.default_version}' of library '{self.prefix}' "
                f"must be one of {', '.join(names)}."
            )

        for name in self.version_patterns.values():
            if name not in names:
                raise ValueError(f"Unknown version '{name}' in patterns of '{self.prefix}'.")

        return self

    @property
    def display_name(self) -> str:
        return self.name or self.prefix

    @property
    def default(self) -> VersionSpec:
        return next(v for v in self.versions if v.name == self.default_version)

    def get_version(self, name: Optional[str]) -> VersionSpec:
        """
        Get a version by name, or the default version when not found.
        """
        if name is not None:
            for version in self.versions:
                if version.name == name:
                    return version

        return self.default

    def get_relative_path(self, import_path: str) -> str:
        return import_path[len(self.prefix) :].lstrip("/")

    def owns(self, import_path: str) -> bool:
        return import_path == self.prefix or import_path.startswith(f"{self.prefix}/")


DEFAULT_LIBRARIES: tuple[LibrarySpec, ...] = (
    LibrarySpec(
        prefix="@openzeppelin/contracts",
        name="OpenZeppelin",
        url="https://github.com/OpenZeppelin/openzeppelin-contracts",
        versions=[
            VersionSpec(
                name="5.0",
                branch="release-v5.0",
                base_url=f"{OPENZEPPELIN_RAW}/release-v5.0/contracts/",
                features=["IERC6093", "AccessManager"],
                patterns=[
                    # Ownable takes the initial owner in 5.0.
                    # Any bare Ownable() in the file rules it out.
                    r"\A(?![\s\S]*\bOwnable\(\))[\s\S]*?\bOwnable\(\s*[^)\s]",
                    # v5 code uses selective imports.
                    r"\bimport\s*\{",
                ],
            ),
            VersionSpec(
                name="4.9",
                branch="release-v4.9",
                base_url=f"{OPENZEPPELIN_RAW}/release-v4.9/contracts/",
                features=["Ownable()"],
            ),
            VersionSpec(
                name="4.7",
                branch="release-v4.7",
                base_url=f"{OPENZEPPELIN_RAW}/release-v4.7/contracts/",
                features=["Ownable()"],
            ),
        ],
        default_version="5.0",
        version_patterns={r"@openzeppelin/contracts/?(?:/v5|@5|@v5|@~5)": "5.0"},
        fallback_urls={
            "interfaces/draft-IERC6093.sol": (
                f"{OPENZEPPELIN_RAW}/release-v5.0/contracts/interfaces/draft-IERC6093.sol"
            ),
        },
    ),
    LibrarySpec(
        prefix="@chainlink/contracts",
        name="Chainlink",
        url="https://github.com/smartcontractkit/chainlink",
        versions=[
            VersionSpec(
                name="latest", branch="develop", base_url=f"{CHAINLINK_RAW}/develop/contracts/"
            ),
            VersionSpec(
                name="v2.0.0", branch="v2.0.0", base_url=f"{CHAINLINK_RAW}/v2.0.0/contracts/"
            ),
        ],
        default_version="latest",
        version_patterns={r"@chainlink/contracts/?(?:/v2|@2|@v2)": "v2.0.0"},
    ),
    LibrarySpec(
        prefix="@uniswap/v3-core",
        name="Uniswap V3",
        url="https://github.com/Uniswap/v3-core",
        versions=[
            VersionSpec(
                name="latest", branch="main", base_url=f"{UNISWAP_RAW}/v3-core/main/contracts/"
            ),
        ],
        default_version="latest",
    ),
    LibrarySpec(
        prefix="@uniswap/v4-core",
        name="Uniswap V4",
        url="https://github.com/Uniswap/v4-core",
        versions=[
            VersionSpec(name="latest", branch="main", base_url=f"{UNISWAP_RAW}/v4-core/main/"),
        ],
        default_version="latest",
    ),
)


class LibraryRegistry:
    """
    A read-only lookup of libraries by import prefix.
    Safe to share between resolution passes.
    """

    def __init__(self, libraries: Iterable[LibrarySpec] = DEFAULT_LIBRARIES):
        self._libraries: dict[str, LibrarySpec] = {}
        for library in libraries:
            # Later definitions override earlier ones (config over defaults).
            self._libraries[library.prefix] = library

    @classmethod
    def from_config(cls, libraries: Iterable[LibrarySpec] = ()) -> "LibraryRegistry":
        return cls((*DEFAULT_LIBRARIES, *libraries))

    def __getitem__(self, prefix: str) -> LibrarySpec:
        return self._libraries[prefix]

    def __contains__(self, prefix: str) -> bool:
        return prefix in self._libraries

    def __iter__(self) -> Iterator[LibrarySpec]:
        return iter(self._libraries.values())

    def __len__(self) -> int:
        return len(self._libraries)

    def __repr__(self) -> str:
        return f"<LibraryRegistry {', '.join(self.prefixes)}>"

    @property
    def prefixes(self) -> list[str]:
        return list(self._libraries)

    def find(self, import_path: str) -> Optional[LibrarySpec]:
        """
        Find the library owning the given import path, using the longest
        matching prefix.

        Args:
            import_path (str): A bare import path.

        Returns:
            Optional[:class:`~ape_solidity_imports.registry.LibrarySpec`]: ``None``
            when the path is not externally resolvable.
        """
        matches = [lib for lib in self._libraries.values() if lib.owns(import_path)]
        if not matches:
            return None

        return max(matches, key=lambda lib: len(lib.prefix))

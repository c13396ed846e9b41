import pytest

from ape_solidity_imports.registry import (
    DEFAULT_LIBRARIES,
    LibraryRegistry,
    LibrarySpec,
    VersionSpec,
)

OZ = "@openzeppelin/contracts"


def make_library(prefix: str, *names: str, default=None, **kwargs) -> LibrarySpec:
    names = names or ("latest",)
    return LibrarySpec(
        prefix=prefix,
        versions=[VersionSpec(name=n, base_url=f"https://example.com/{n}/") for n in names],
        default_version=default or names[0],
        **kwargs,
    )


@pytest.mark.parametrize("library", DEFAULT_LIBRARIES, ids=lambda lib: lib.prefix)
def test_default_libraries(library):
    names = [v.name for v in library.versions]
    assert library.default_version in names
    assert len(set(names)) == len(names)
    assert library.default.name == library.default_version


def test_registry_contains_defaults(registry):
    assert OZ in registry
    assert "@chainlink/contracts" in registry
    assert "@uniswap/v3-core" in registry
    assert "@uniswap/v4-core" in registry
    assert len(registry) == len(DEFAULT_LIBRARIES)
    assert registry[OZ].display_name == "OpenZeppelin"


def test_find(registry):
    actual = registry.find(f"{OZ}/token/ERC20/ERC20.sol")
    assert actual is not None
    assert actual.prefix == OZ


def test_find_requires_segment_boundary(registry):
    path = "@openzeppelin/contracts-upgradeable/proxy/utils/Initializable.sol"
    assert registry.find(path) is None


def test_find_not_registered(registry):
    assert registry.find("@foo/bar/A.sol") is None
    assert registry.find("./A.sol") is None


def test_find_longest_prefix():
    registry = LibraryRegistry([make_library("@foo/lib"), make_library("@foo/lib/extra")])
    assert registry.find("@foo/lib/extra/A.sol").prefix == "@foo/lib/extra"
    assert registry.find("@foo/lib/A.sol").prefix == "@foo/lib"


def test_from_config_overrides_default():
    replacement = make_library(OZ, "custom")
    registry = LibraryRegistry.from_config([replacement, make_library("@foo/lib")])
    assert registry[OZ].default_version == "custom"
    assert "@foo/lib" in registry
    assert "@chainlink/contracts" in registry


def test_get_relative_path(registry):
    library = registry[OZ]
    assert library.get_relative_path(f"{OZ}/access/Ownable.sol") == "access/Ownable.sol"


def test_get_version(registry):
    library = registry[OZ]
    assert library.get_version("4.9").name == "4.9"
    assert library.get_version("0.1").name == "5.0"
    assert library.get_version(None).name == "5.0"


def test_get_url(registry):
    version = registry[OZ].get_version("4.9")
    assert version.get_url("access/Ownable.sol") == (
        "https://raw.githubusercontent.com/OpenZeppelin/openzeppelin-contracts/"
        "release-v4.9/contracts/access/Ownable.sol"
    )


def test_library_requires_versions():
    with pytest.raises(ValueError, match="at least one version"):
        LibrarySpec(prefix="@foo/lib", versions=[], default_version="latest")


def test_library_default_must_exist():
    with pytest.raises(ValueError, match="Default version"):
        make_library("@foo/lib", "1.0", "2.0", default="3.0")


def test_library_duplicate_versions():
    with pytest.raises(ValueError, match="duplicate"):
        make_library("@foo/lib", "1.0", "1.0")


def test_library_unknown_pattern_version():
    with pytest.raises(ValueError, match="Unknown version"):
        make_library("@foo/lib", "1.0", version_patterns={"@foo/lib@2": "2.0"})

from typing import Any

from ape import plugins


@plugins.register(plugins.Config)
def config_class():
    from .compiler import SolidityImportsConfig

    return SolidityImportsConfig


def __getattr__(name: str) -> Any:
    if name == "SolidityImportCompiler":
        from .compiler import SolidityImportCompiler

        return SolidityImportCompiler

    elif name == "SolidityImportsConfig":
        from .compiler import SolidityImportsConfig

        return SolidityImportsConfig

    elif name == "ResolutionEngine":
        from .resolver import ResolutionEngine

        return ResolutionEngine

    elif name == "ImportLookup":
        from .lookup import ImportLookup

        return ImportLookup

    elif name == "LibraryRegistry":
        from .registry import LibraryRegistry

        return LibraryRegistry

    else:
        raise AttributeError(name)


__all__ = [
    "ImportLookup",
    "LibraryRegistry",
    "ResolutionEngine",
    "SolidityImportCompiler",
    "SolidityImportsConfig",
]

import json
import re
from collections.abc import Iterable
from enum import Enum
from typing import Optional, Union

from ape.utils import pragma_str_to_specifier_set
from packaging.specifiers import SpecifierSet
from packaging.version import Version

OUTPUT_SELECTION = [
    "abi",
    "evm.bytecode",
    "evm.deployedBytecode",
    "metadata",
    "userdoc",
    "devdoc",
]

# Comment patterns
SINGLE_LINE_COMMENT_PATTERN = re.compile(r"//[^\n]*")
MULTI_LINE_COMMENT_PATTERN = re.compile(r"/\*.*?\*/", re.DOTALL)

# Handles `import "x";`, `import "x" as X;`, `import * as X from "x";`,
# `import X from "x";` and `import {A, B as C} from "x";`.
IMPORT_PATTERN = re.compile(
    r"\bimport\s+"
    r"(?:(?:\{[^}]*\}|\*\s*as\s+\w+|\w+)\s*from\s*)?"
    r"[\"']([^\"']+)[\"']"
    r"(?:\s*as\s+\w+)?\s*;"
)


class Extension(Enum):
    SOL = ".sol"


def strip_comments(source: str) -> str:
    source = MULTI_LINE_COMMENT_PATTERN.sub("", source)
    return SINGLE_LINE_COMMENT_PATTERN.sub("", source)


def get_import_paths(source: str) -> list[str]:
    """
    Extract the import paths referenced in Solidity source code.

    This is a text scan, not a parse: comments are removed first, but string
    literals are not understood, so an unterminated ``/*`` or ``//`` inside a
    string can hide imports that follow it.

    Args:
        source (str): Solidity source code.

    Returns:
        list[str]: Import paths, in order of appearance, without duplicates.
    """
    paths: dict[str, None] = {}
    for match in IMPORT_PATTERN.finditer(strip_comments(source)):
        paths[match.group(1)] = None

    return list(paths)


def is_relative_import(import_path: str) -> bool:
    return import_path.startswith("./") or import_path.startswith("../")


def strip_leading_slash(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def get_basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def resolve_relative_path(base_path: str, relative_path: str) -> str:
    """
    Resolve ``relative_path`` against the directory of ``base_path``.
    ``.`` segments are ignored and ``..`` pops a directory. When the path
    tries to go above the root, ``relative_path`` is returned unchanged.

    >>> resolve_relative_path("pkg/contracts/Token.sol", "../lib/Helper.sol")
    'pkg/lib/Helper.sol'
    """
    dir_parts = base_path.split("/")[:-1]
    for part in relative_path.split("/"):
        if part in (".", ""):
            continue

        elif part == "..":
            if not dir_parts:
                return relative_path

            dir_parts.pop()

        else:
            dir_parts.append(part)

    return "/".join(dir_parts)


def get_pragma_spec_from_str(source_str: str) -> Optional[SpecifierSet]:
    if not (
        pragma_match := next(
            re.finditer(r"(?:\n|^)\s*pragma\s*solidity\s*([^;\n]*)", source_str), None
        )
    ):
        return None  # Try compiling with latest

    return pragma_str_to_specifier_set(pragma_match.groups()[0])


def load_dict(data: Union[str, dict]) -> dict:
    return data if isinstance(data, dict) else json.loads(data)


def get_versions_can_use(pragma_spec: SpecifierSet, options: Iterable[Version]) -> list[Version]:
    return sorted(list(pragma_spec.filter(options)), reverse=True)


def select_version(pragma_spec: SpecifierSet, options: Iterable[Version]) -> Optional[Version]:
    choices = get_versions_can_use(pragma_spec, options)
    return choices[0] if choices else None


def strip_commit_hash(version: Union[str, Version]) -> Version:
    """
    Version('0.8.21+commit.d9974bed') => Version('0.8.21')> the simple way.
    """
    return Version(f"{str(version).split('+')[0].strip()}")


def get_utf8_size(content: str) -> int:
    return len(content.encode("utf-8"))

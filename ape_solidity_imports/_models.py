from enum import Enum
from typing import Optional

from ape_solidity_imports.exceptions import SolidityImportsError


class ImportStatus(Enum):
    DISCOVERED = "discovered"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    MAPPED_LOCAL = "mapped_local"
    FAILED = "failed"


class ResolutionState:
    """
    The bookkeeping of one resolution pass. Created per request
    and discarded once the request is done.
    """

    def __init__(self):
        # Ordered; every import path seen at least once.
        self.discovered: dict[str, None] = {}
        self.processing: set[str] = set()
        self.resolved: set[str] = set()
        self.failed: dict[str, SolidityImportsError] = {}
        # Relative import path -> local source ID.
        self.path_aliases: dict[str, str] = {}

    def __repr__(self) -> str:
        return (
            f"<ResolutionState discovered={len(self.discovered)} "
            f"resolved={len(self.resolved)} failed={len(self.failed)}>"
        )

    def discover(self, import_path: str):
        self.discovered.setdefault(import_path, None)

    def status(self, import_path: str) -> Optional[ImportStatus]:
        if import_path in self.processing:
            return ImportStatus.PROCESSING
        elif import_path in self.resolved:
            return ImportStatus.RESOLVED
        elif import_path in self.failed:
            return ImportStatus.FAILED
        elif import_path in self.path_aliases:
            return ImportStatus.MAPPED_LOCAL
        elif import_path in self.discovered:
            return ImportStatus.DISCOVERED

        return None

    def is_done(self, import_path: str) -> bool:
        """
        ``True`` when the path is in flight or in a terminal state.
        """
        return self.status(import_path) not in (None, ImportStatus.DISCOVERED)

    def start(self, import_path: str):
        self.discover(import_path)
        self.processing.add(import_path)

    def finish(self, import_path: str):
        self.processing.discard(import_path)

    def resolve(self, import_path: str):
        self.processing.discard(import_path)
        self.failed.pop(import_path, None)
        self.resolved.add(import_path)

    def fail(self, import_path: str, error: SolidityImportsError):
        self.processing.discard(import_path)
        self.failed[import_path] = error

    @property
    def unresolved(self) -> list[str]:
        return [
            p for p in self.discovered if p not in self.resolved and p not in self.path_aliases
        ]

from typing import Optional

from ape.utils.basemodel import BaseModel
from ethpm_types import ContractType


class ResolutionStats(BaseModel):
    total_files: int = 0
    external_imports: int = 0
    resolved_imports: int = 0
    failed_imports: int = 0


class ResolutionResult(BaseModel):
    """
    The outcome of one resolution pass.
    """

    files: dict[str, str]
    """
    User files merged with every fetched library file.
    User files are never replaced by fetched ones.
    """

    stats: ResolutionStats = ResolutionStats()

    unresolved: list[str] = []
    """
    Imports discovered but neither fetched nor mapped to a local file.
    """

    failures: dict[str, str] = {}
    """
    Failure messages by import path.
    """

    warnings: list[str] = []

    versions: dict[str, str] = {}
    """
    The library version used per prefix.
    """

    aliases: dict[str, str] = {}
    """
    Relative imports mapped to local files by filename.
    """

    @property
    def success(self) -> bool:
        return not self.unresolved


class LookupResult(BaseModel):
    """
    The answer given to the compiler for one import path.
    Exactly one of ``contents`` and ``error`` is set.
    """

    contents: Optional[str] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.contents is not None


class CompilationStats(ResolutionStats):
    compilation_time: float = 0.0
    total_time: float = 0.0


class CompiledContract(BaseModel):
    abi: list[dict] = []
    bytecode: str = "0x"


class CompilationResult(BaseModel):
    contract_name: str
    abi: list[dict]
    bytecode: str
    deployed_bytecode_size: int
    compiler_version: str
    contracts: dict[str, CompiledContract] = {}
    contract_types: dict[str, ContractType] = {}
    warnings: list[dict] = []
    unresolved_imports: list[str] = []
    stats: CompilationStats = CompilationStats()


class ErrorResponse(BaseModel):
    error: str
    status_code: int = 500
    errors: list[dict] = []
    warnings: list[dict] = []
    unresolved_imports: list[str] = []

from .consolidation import ConsolidationError, ConsolidationReport, MemoryConsolidator
from .storage import DatabaseInfo, MemoryDatabase, VectorMode
from .storage.identity import IdentityRepository
from .storage.memories import MemoryRepository

__all__ = [
    "ConsolidationError",
    "ConsolidationReport",
    "DatabaseInfo",
    "IdentityRepository",
    "MemoryConsolidator",
    "MemoryDatabase",
    "MemoryRepository",
    "VectorMode",
]

from .database import DatabaseInfo, MemoryDatabase
from .schema import MemorySchemaMixin
from .vectors import DetachedVec0Index, JsonVectorIndex, Vec0VectorIndex, VectorIndex, VectorMode

__all__ = [
    "DatabaseInfo",
    "MemoryDatabase",
    "MemorySchemaMixin",
    "VectorMode",
    "VectorIndex",
    "Vec0VectorIndex",
    "JsonVectorIndex",
    "DetachedVec0Index",
]

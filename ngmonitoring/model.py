"""Schema metadata as reported by the database status API."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

SCHEMA_VERSION_PATH = "/tidb/ddl/global_schema_version"


class SchemaState(IntEnum):
    """Lifecycle state of a schema element."""

    NONE = 0
    DELETE_ONLY = 1
    WRITE_ONLY = 2
    WRITE_REORGANIZATION = 3
    DELETE_REORGANIZATION = 4
    PUBLIC = 5


def _items(data: dict, key: str) -> list:
    return data.get(key) or []


@dataclass(frozen=True)
class CIStr:
    """A name with its original and lower-case spelling."""

    o: str = ""
    l: str = ""  # noqa: E741

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CIStr":
        data = data or {}
        return cls(o=data.get("O", ""), l=data.get("L", ""))


@dataclass
class DBInfo:
    """A database."""

    id: int = 0
    name: CIStr = field(default_factory=CIStr)
    state: SchemaState = SchemaState.NONE

    @classmethod
    def from_dict(cls, data: dict) -> "DBInfo":
        return cls(
            id=int(data.get("id", 0)),
            name=CIStr.from_dict(data.get("db_name")),
            state=SchemaState(data.get("state", 0)),
        )


@dataclass
class IndexInfo:
    """An index of a table."""

    id: int = 0
    name: CIStr = field(default_factory=CIStr)

    @classmethod
    def from_dict(cls, data: dict) -> "IndexInfo":
        return cls(id=int(data.get("id", 0)), name=CIStr.from_dict(data.get("idx_name")))


@dataclass
class PartitionDefinition:
    """One partition of a table."""

    id: int = 0
    name: CIStr = field(default_factory=CIStr)

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionDefinition":
        return cls(id=int(data.get("id", 0)), name=CIStr.from_dict(data.get("name")))


@dataclass
class PartitionInfo:
    """Partitioning of a table."""

    enable: bool = False
    definitions: list[PartitionDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionInfo":
        return cls(
            enable=bool(data.get("enable", False)),
            definitions=[PartitionDefinition.from_dict(d) for d in _items(data, "definitions")],
        )


@dataclass
class TableInfo:
    """A table with its indices and partitions."""

    id: int = 0
    name: CIStr = field(default_factory=CIStr)
    indices: list[IndexInfo] = field(default_factory=list)
    partition: Optional[PartitionInfo] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TableInfo":
        partition = data.get("partition")
        return cls(
            id=int(data.get("id", 0)),
            name=CIStr.from_dict(data.get("name")),
            indices=[IndexInfo.from_dict(i) for i in _items(data, "index_info")],
            partition=PartitionInfo.from_dict(partition) if partition is not None else None,
        )

    def partition_info(self) -> Optional[PartitionInfo]:
        """The partitioning, if the table has it enabled."""
        if self.partition is not None and self.partition.enable:
            return self.partition
        return None


@dataclass
class TableDetail:
    """Flattened table name, database, id and index names."""

    name: str
    db: str
    id: int
    indices: dict[int, str] = field(default_factory=dict)
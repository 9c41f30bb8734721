import json

import pytest

from ngmonitoring.model import (
    CIStr,
    DBInfo,
    IndexInfo,
    PartitionDefinition,
    PartitionInfo,
    SchemaState,
    TableInfo,
)

TABLE_JSON = """
{
  "id": 70,
  "name": {"O": "Orders", "L": "orders"},
  "index_info": [
    {"id": 1, "idx_name": {"O": "PRIMARY", "L": "primary"}},
    {"id": 2, "idx_name": {"O": "idx_user", "L": "idx_user"}}
  ],
  "partition": {
    "enable": true,
    "definitions": [
      {"id": 71, "name": {"O": "p0", "L": "p0"}},
      {"id": 72, "name": {"O": "p1", "L": "p1"}}
    ]
  }
}
"""


def test_cistr_from_dict():
    assert CIStr.from_dict({"O": "Test", "L": "test"}) == CIStr(o="Test", l="test")


def test_db_info_from_dict():
    info = DBInfo.from_dict({"id": 3, "db_name": {"O": "Shop", "L": "shop"}, "state": 5})
    assert info.id == 3
    assert info.name.o == "Shop"
    assert info.state is SchemaState.PUBLIC


def test_db_info_missing_state_is_none():
    info = DBInfo.from_dict({"id": 3, "db_name": {"O": "a", "L": "a"}})
    assert info.state is SchemaState.NONE


def test_db_info_invalid_state():
    with pytest.raises(ValueError):
        DBInfo.from_dict({"id": 1, "state": 99})


def test_table_info_from_json():
    table = TableInfo.from_dict(json.loads(TABLE_JSON))
    assert table.id == 70
    assert table.name.o == "Orders"
    assert [i.id for i in table.indices] == [1, 2]
    assert [i.name.o for i in table.indices] == ["PRIMARY", "idx_user"]
    partition = table.partition_info()
    assert partition is table.partition
    assert [d.id for d in partition.definitions] == [71, 72]


def test_partition_info_disabled_is_hidden():
    data = json.loads(TABLE_JSON)
    data["partition"]["enable"] = False
    table = TableInfo.from_dict(data)
    assert table.partition is not None and table.partition_info() is None


def test_table_without_partition():
    table = TableInfo.from_dict({"id": 5, "name": {"O": "t", "L": "t"}, "partition": None})
    assert table.partition_info() is None
    assert table.indices == []


def test_index_and_partition_definition_from_dict():
    idx = IndexInfo.from_dict({"id": 9, "idx_name": {"O": "k", "L": "k"}})
    part = PartitionDefinition.from_dict({"id": 8, "name": {"O": "p", "L": "p"}})
    assert (idx.id, idx.name.o) == (9, "k")
    assert (part.id, part.name.o) == (8, "p")


def test_partition_info_null_definitions():
    info = PartitionInfo.from_dict({"enable": True, "definitions": None})
    assert info.enable is True and info.definitions == []
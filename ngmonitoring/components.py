"""Cluster component instances that can be scraped."""

from __future__ import annotations

from dataclasses import dataclass

COMPONENT_TIDB = "tidb"
COMPONENT_TIKV = "tikv"
COMPONENT_TIFLASH = "tiflash"
COMPONENT_PD = "pd"
COMPONENT_TICDC = "ticdc"


@dataclass(frozen=True, order=True)
class Component:
    """One instance of a cluster component; ordered by name, ip, then port."""

    name: str
    ip: str = ""
    port: int = 0
    status_port: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "ip": self.ip,
            "port": self.port,
            "status_port": self.status_port,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Component":
        return cls(
            name=data.get("name", ""),
            ip=data.get("ip", ""),
            port=int(data.get("port", 0)),
            status_port=int(data.get("status_port", 0)),
        )
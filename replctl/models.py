"""
Cluster metadata records and operation results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class NodeType(str, Enum):
    PRIMARY = "primary"
    STANDBY = "standby"
    WITNESS = "witness"


@dataclass(frozen=True)
class NodeRecord:
    """One row of the node table."""
    id: int
    type: NodeType
    cluster_name: str
    name: str
    conninfo: str
    priority: int
    upstream_node_id: Optional[int] = None
    slot_name: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class MonitorRecord:
    """One replication lag sample written by the monitoring daemon."""
    primary_node: int
    standby_node: int
    last_monitor_time: datetime
    last_wal_primary_location: str
    replication_lag: int
    apply_lag: int
    last_apply_time: Optional[datetime] = None
    last_wal_standby_location: Optional[str] = None


@dataclass(frozen=True)
class VersionInfo:
    """Server version as reported by the engine."""
    num: int
    text: str

    @property
    def major(self) -> int:
        return self.num // 100


class PromotionState(str, Enum):
    STANDBY = "standby"
    PROMOTING = "promoting"
    PROMOTED_CONFIRMED = "promoted_confirmed"
    PROMOTION_TIMED_OUT = "promotion_timed_out"


@dataclass
class PromotionResult:
    state: PromotionState
    elapsed: float = 0.0
    polls: int = 0


@dataclass
class CloneResult:
    """Progress of a clone run; kept on failure for manual cleanup."""
    data_directory: str = ""
    stages_completed: List[str] = field(default_factory=list)
    copied_files: List[str] = field(default_factory=list)
    slot_name: Optional[str] = None

    def complete(self, stage: str) -> None:
        self.stages_completed.append(stage)


@dataclass(frozen=True)
class NodeStatus:
    """A node record together with the role its server reports right now."""
    record: NodeRecord
    role: str

    @property
    def label(self) -> str:
        return "* master" if self.role == "master" else f"  {self.role}"

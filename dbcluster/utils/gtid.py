"""
MariaDB global transaction ID helpers.

A GTID has the form ``domain-server-sequence``. Positions such as
``@@gtid_current_pos`` are comma separated lists with one GTID per domain;
replicas are ranked by the sequence number within the replication domain.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Gtid:
    """A single GTID."""

    domain_id: int
    server_id: int
    sequence: int

    @classmethod
    def parse(cls, raw: str) -> "Gtid":
        """
        Parse one GTID.

        Raises:
            ValueError: If the value is not of the form domain-server-sequence
        """
        parts = raw.strip().split("-")
        if len(parts) != 3:
            raise ValueError(f"Invalid GTID: {raw!r}")
        try:
            domain_id, server_id, sequence = (int(p) for p in parts)
        except ValueError as e:
            raise ValueError(f"Invalid GTID: {raw!r}") from e
        return cls(domain_id=domain_id, server_id=server_id, sequence=sequence)

    def greater_than(self, other: "Gtid") -> bool:
        """
        Compare two GTIDs of the same domain.

        Raises:
            ValueError: If the GTIDs belong to different domains
        """
        if self.domain_id != other.domain_id:
            raise ValueError(
                f"Cannot compare GTIDs from different domains: {self.domain_id} and {other.domain_id}"
            )
        return self.sequence > other.sequence

    def __str__(self) -> str:
        return f"{self.domain_id}-{self.server_id}-{self.sequence}"


def parse_position(position: Optional[str], domain_id: int) -> Optional[Gtid]:
    """
    Pick the GTID of a domain out of a GTID position list.

    Returns None when the position is empty or has nothing for the domain.
    """
    if not position:
        return None
    for raw in position.split(","):
        raw = raw.strip()
        if not raw:
            continue
        gtid = Gtid.parse(raw)
        if gtid.domain_id == domain_id:
            return gtid
    return None

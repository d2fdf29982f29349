"""Bookkeeping of node slots in the active cluster."""

import enum
import typing as tp

from ccm_bridge import exceptions
from ccm_bridge.utils import configuration


class SlotState(enum.StrEnum):
    FREE = "free"
    ADDED = "added"
    STARTED = "started"
    STOPPED = "stopped"
    DECOMMISSIONED = "decommissioned"


class NodeSlots:
    """Node slots `1..limit` of the active cluster.

    A slot is occupied from the moment the node is added until it is removed (or the cluster is
    destroyed), regardless of whether the node is running.
    """

    def __init__(self, limit: int = configuration.NODE_LIMIT) -> None:
        self.limit = limit
        self._slots: dict[int, SlotState] = {}
        self.reset()

    def reset(self) -> None:
        """Mark all slots free."""
        self._slots = dict.fromkeys(range(1, self.limit + 1), SlotState.FREE)

    def _check(self, slot: int) -> None:
        if slot not in self._slots:
            msg = f"Invalid node {slot}, must be in range 1 - {self.limit}."
            raise ValueError(msg)

    def occupy(self, slots: tp.Iterable[int], state: SlotState = SlotState.ADDED) -> None:
        for slot in slots:
            self.set_state(slot, state)

    def next_free(self) -> int:
        """Return the lowest free slot."""
        for slot, state in self._slots.items():
            if state == SlotState.FREE:
                return slot
        msg = f"Cluster node limit of {self.limit} nodes has been reached."
        raise exceptions.CapacityError(msg)

    def release(self, slot: int) -> None:
        self.set_state(slot, SlotState.FREE)

    def set_state(self, slot: int, state: SlotState) -> None:
        self._check(slot)
        self._slots[slot] = state

    def get_state(self, slot: int) -> SlotState:
        self._check(slot)
        return self._slots[slot]

    def set_running_state(self, state: SlotState) -> None:
        """Set state of all occupied slots, except the decommissioned ones."""
        for slot in self.occupied:
            if self._slots[slot] != SlotState.DECOMMISSIONED:
                self._slots[slot] = state

    @property
    def occupied(self) -> list[int]:
        return [s for s, state in self._slots.items() if state != SlotState.FREE]

    def __repr__(self) -> str:
        return f"<NodeSlots: occupied={self.occupied}>"

"""Durable record of the highest fully processed block."""

from typing import Optional

from .store import MaterializedStore


class CheckpointError(RuntimeError):
    pass


class CheckpointStore:
    """Single scalar checkpoint kept in the ``sync_state`` row.

    ``set`` is normally called inside the writer's batch transaction so the
    checkpoint commits atomically with the mutations of that batch.
    """

    def __init__(self, store: MaterializedStore, start_block: int = 0):
        self.store = store
        self.genesis = max(int(start_block) - 1, 0)

    def get(self) -> int:
        state = self.store.read_sync_state()
        if state is None:
            return self.genesis
        return int(state["last_processed_block"])

    def set(self, block_number: int, block_timestamp: Optional[int] = None) -> None:
        block_number = int(block_number)
        current = self.get()
        if block_number < current:
            raise CheckpointError(
                f"checkpoint must not move backwards: {block_number} < {current}"
            )
        try:
            self.store.write_sync_state(block_number, block_timestamp)
        except Exception as exc:
            raise CheckpointError(f"failed to persist checkpoint {block_number}: {exc}") from exc

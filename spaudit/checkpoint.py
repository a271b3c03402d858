"""
Checkpoint management for resumable audits.

A checkpoint holds the ids of processed resources, their detail records
(without the nested rosters, to bound file size) and the discovery delta
link. A resumed run skips processed resources and merges the saved records
into its output.
"""
import json
import logging
import os
import tempfile
import threading
from typing import Dict, Iterable, List, Optional, Set

from .models import CheckpointState, Resource, ResourceDetail
from .utils import get_timestamp

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Load, accumulate and atomically save a CheckpointState.

    ``record`` may be called from every worker thread; all appends go
    through one writer lock. A disabled manager keeps nothing and never
    touches the file system.
    """

    def __init__(self, path: str, enabled: bool = True, save_every: int = 0):
        self.path = path
        self.enabled = enabled
        self.save_every = max(0, int(save_every or 0))
        self.state = CheckpointState()
        self._lock = threading.Lock()
        self._since_save = 0

    def load(self) -> CheckpointState:
        """Load saved state; missing or unreadable files yield an empty state."""
        if not self.enabled:
            return self.state
        if os.path.exists(self.path) and os.path.getsize(self.path) > 0:
            try:
                with open(self.path, 'r') as f:
                    loaded = CheckpointState.from_dict(json.load(f))
            except (json.JSONDecodeError, IOError, TypeError, AttributeError) as e:
                logger.warning(f"Could not read checkpoint file {self.path} ({e}), starting fresh")
                loaded = CheckpointState()
            with self._lock:
                self.state = loaded
            logger.info(
                f"Loaded checkpoint: {len(loaded.processed_resource_ids):,} resources already processed"
            )
        return self.state

    def save(self, state: Optional[CheckpointState] = None) -> None:
        """Save state to file atomically.

        Uses write-to-temp-then-rename so a process killed mid-write never
        leaves a truncated checkpoint. The temp file is removed on every
        failure path, including KeyboardInterrupt and SystemExit.
        """
        if not self.enabled:
            return
        with self._lock:
            if state is not None:
                self.state = state
            payload = self.state.to_dict()
            self._since_save = 0
        payload['updatedAt'] = get_timestamp()

        dir_name = os.path.dirname(self.path) or '.'
        os.makedirs(dir_name, exist_ok=True)
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(mode='w', dir=dir_name, delete=False, suffix='.tmp') as f:
                json.dump(payload, f, indent=2, default=str)
                temp_path = f.name
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
            temp_path = None
            logger.debug(f"Checkpoint saved: {len(payload['processedResourceIds'])} processed")
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass  # don't mask the original exception

    def record(self, detail: ResourceDetail) -> None:
        """Append one finished record; saves every ``save_every`` records when set."""
        if not self.enabled:
            return
        with self._lock:
            self.state.processed_resource_ids.add(detail.resource_id)
            self.state.partial_results.append(detail)
            self._since_save += 1
            due = self.save_every and self._since_save >= self.save_every
        if due:
            self.save()

    def forget(self, resource_ids: Iterable[str]) -> int:
        """Drop records of resources that no longer exist; returns how many were dropped."""
        removed = set(resource_ids)
        with self._lock:
            before = len(self.state.partial_results)
            self.state.processed_resource_ids -= removed
            self.state.partial_results = [
                d for d in self.state.partial_results if d.resource_id not in removed
            ]
            return before - len(self.state.partial_results)

    def set_continuation_token(self, token: Optional[str]) -> None:
        with self._lock:
            self.state.continuation_token = token

    def pending(self, resources: Iterable[Resource]) -> List[Resource]:
        """Resources not yet processed by an earlier run."""
        with self._lock:
            done: Set[str] = set(self.state.processed_resource_ids)
        return [r for r in resources if r.id not in done]

    def merged_results(self, new_results: Iterable[ResourceDetail],
                       previous: Optional[Iterable[ResourceDetail]] = None) -> List[ResourceDetail]:
        """Saved records plus this run's records; this run wins on id collision."""
        merged: Dict[str, ResourceDetail] = {}
        for detail in previous or []:
            merged[detail.resource_id] = detail
        for detail in new_results:
            merged[detail.resource_id] = detail
        return list(merged.values())

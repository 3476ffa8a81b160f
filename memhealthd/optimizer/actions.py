"""
Action Executor - runs the automated actions of a recommendation.

Every action goes through the RuntimeControl; nothing here touches the
collector directly. Failures come back as unsuccessful ActionOutcomes
instead of exceptions so one failing action never stops the others.
"""

import logging
import os
from typing import Any, Callable, Dict, Optional

from ..constants import Paths
from ..exceptions import ActionError
from ..models import Action, ActionOutcome
from ..runtime import RuntimeControl
from ..storage import Persistence
from ..utils.error_handling import ErrorCategory, handle_error

logger = logging.getLogger(__name__)


class ActionExecutor:
    """Maps action types to handlers."""

    def __init__(self, runtime: RuntimeControl, persistence: Optional[Persistence] = None):
        self.runtime = runtime
        self.persistence = persistence
        self.checkpoint_compression = False
        self._cache_clearers: Dict[str, Callable[[], Any]] = {}
        self._handlers: Dict[str, Callable[[], Dict[str, Any]]] = {
            'force_gc': self.force_gc,
            'clear_caches': self.clear_caches,
            'compact_heap': self.compact_heap,
            'implement_checkpoint_compression': self.enable_checkpoint_compression,
            'optimize_gc_settings': self.optimize_gc_settings,
            'create_heap_snapshot': self.create_heap_snapshot,
        }

    @property
    def supported_actions(self):
        return sorted(self._handlers)

    def register_cache_clearer(self, name: str, clearer: Callable[[], Any]) -> None:
        """Register a host cache. The clearer may return the number of entries freed."""
        self._cache_clearers[name] = clearer
        logger.debug(f"Registered cache clearer {name}")

    def execute(self, action: Action) -> ActionOutcome:
        handler = self._handlers.get(action.action_type)
        if handler is None:
            return ActionOutcome(action.action_type, False,
                                 error=f"Unknown action type: {action.action_type}")
        try:
            result = handler()
        except Exception as e:
            handle_error(e, f"optimization action {action.action_type}", ErrorCategory.ACTION)
            return ActionOutcome(action.action_type, False, error=str(e))

        logger.debug(f"Action {action.action_type} completed: {result}")
        return ActionOutcome(action.action_type, True, result=result)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def force_gc(self) -> Dict[str, Any]:
        return self.runtime.force_collect()

    def clear_caches(self) -> Dict[str, Any]:
        cleared = 0
        failed = []
        for name, clearer in list(self._cache_clearers.items()):
            try:
                freed = clearer()
            except Exception as e:
                handle_error(e, f"clear cache {name}", ErrorCategory.ACTION)
                failed.append(name)
                continue
            if isinstance(freed, int):
                cleared += freed

        if failed:
            raise ActionError(f"Cache clearers failed: {', '.join(failed)}")
        return {
            'caches': len(self._cache_clearers),
            'cleared_entries': cleared,
            'message': 'Caches cleared successfully',
        }

    def compact_heap(self) -> Dict[str, Any]:
        result = self.runtime.compact()
        result['message'] = 'Heap compaction attempted via garbage collection'
        return result

    def enable_checkpoint_compression(self) -> Dict[str, Any]:
        self.checkpoint_compression = True
        return {'message': 'Checkpoint compression enabled'}

    def optimize_gc_settings(self) -> Dict[str, Any]:
        result = self.runtime.tune_collector()
        result['message'] = 'GC optimization parameters applied'
        return result

    def create_heap_snapshot(self) -> Dict[str, Any]:
        if self.persistence is None:
            raise ActionError("create_heap_snapshot needs a storage root")
        directory = self.persistence.ensure_dir(Paths.SNAPSHOTS)
        self.persistence.submit("heap snapshot", lambda: self.runtime.snapshot(directory))
        return {
            'directory': os.path.relpath(directory, self.persistence.root),
            'message': 'Heap snapshot queued',
        }

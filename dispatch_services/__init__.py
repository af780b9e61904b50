"""
dispatch_services -- transactional orchestration over the dispatch kernel.

Owns commit, rollback, bounded retry, idempotent replay and post-commit
side effects.  Callers use DispatchOrchestrator; nothing else in this
package is needed to drive the kernel.
"""

from dispatch_services.orchestrator import DispatchOrchestrator, build_dispatch_orchestrator
from dispatch_services.retry import is_retryable, run_with_retry
from dispatch_services.side_effects import InMemoryPhotoStore, PhotoStore, SideEffectDispatcher

__all__ = [
    "DispatchOrchestrator",
    "InMemoryPhotoStore",
    "PhotoStore",
    "SideEffectDispatcher",
    "build_dispatch_orchestrator",
    "is_retryable",
    "run_with_retry",
]

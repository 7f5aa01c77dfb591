"""autocurate core package.

The autocurate package is organized into focused modules with clear separation of concerns:

- **orchestrator**: Per-scene automation run across the configured metadata providers
- **status**: Confidence-cascade status detection and the per-scene status tracker
- **stash**: GraphQL client with caching, request coalescing and timeouts
- **duplicates**: Server-side and screenshot-hash duplicate discovery, plus merging
- **persistence**: JSON state store and the bounded run history
- **backup**: Settings profiles and whole-state backup bundles
- **run_summary**: Log recaps of runs and history statistics

Most modules are internal implementation details and should be imported directly
when needed (e.g., ``from autocurate.duplicates import plan_merge``).

The main entry point for automation is the ``AutomationOrchestrator`` class.
"""

from .orchestrator import AutomationOrchestrator, RunResult
from .version import __version__

__all__ = [
    "__version__",
    "AutomationOrchestrator",
    "RunResult",
]

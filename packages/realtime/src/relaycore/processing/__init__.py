"""Off-loop data processing.

Learn: operations.py holds the pure row functions, expressions.py the
restricted arithmetic used by transform, and engine.py runs requests in
a process pool and correlates the responses.
"""

from relaycore.processing.engine import DataProcessingEngine, execute_request
from relaycore.processing.operations import OPERATIONS, run_operation

__all__ = ["DataProcessingEngine", "OPERATIONS", "execute_request", "run_operation"]

# eth_testbench_core/__init__.py

# The main entry points, importable from the package root:
#   TestRunner        discovers and runs the tests of compiled test contracts
#   BroadcastExecutor simulates scripts, plans and commits their transactions
#   LocalNode         in-process JSON-RPC chain
# Everything else (interpreter, cheats, strategies, assembler) is imported
# from its own module.

from .abi import ContractArtifact
from .broadcast import BroadcastExecutor, BroadcastPlan
from .node import LocalNode
from .results import RunReport, TestResult, TestStatus
from .runner import TestRunner
from .state import StateStore

__version__ = "0.1.0"

__all__ = [
    "BroadcastExecutor",
    "BroadcastPlan",
    "ContractArtifact",
    "LocalNode",
    "RunReport",
    "StateStore",
    "TestResult",
    "TestRunner",
    "TestStatus",
]

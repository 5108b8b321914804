"""
sqlrs client: prepare databases, run psql/pgbench against them, clean up.
"""

from clients import SqlrsRestClient
from config import ExecutionContext
from log_utils import setup_logging
from models import Detached, PlanResult, PrepareJob, PrepareJobRequest
from pipeline import CompositePipelineExecutor
from prepare import PrepareJobClient

__all__ = [
    "SqlrsRestClient",
    "ExecutionContext",
    "setup_logging",
    "Detached",
    "PlanResult",
    "PrepareJob",
    "PrepareJobRequest",
    "PrepareJobClient",
    "CompositePipelineExecutor",
]

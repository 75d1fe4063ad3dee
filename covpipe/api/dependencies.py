"""
Shared FastAPI dependencies.

The orchestrator is built once per process from the definition file named
by COVPIPE_DEFINITION. Tests replace it through ``app.dependency_overrides``.
"""
from functools import lru_cache

from covpipe.agents.orchestrator import Orchestrator
from covpipe.core.config import DEFINITION_PATH
from covpipe.parser.workflow_reader import load_definition


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return Orchestrator(load_definition(DEFINITION_PATH))

"""
Workflow Reader
===============
Loads the declarative pipeline definition (``workflows/coverage.yml``) and
validates it into typed models before any run starts.

Strategy:
    The definition is the single source of truth for image references,
    connection variables and artifact layout. Everything the orchestrator
    needs is resolved here once; a definition that cannot produce a working
    run is rejected up front with DefinitionError instead of failing every
    test inside a run.

Network Contract:
    The runner's connection URL must point at the service's hostname (or
    localhost) on the service's published port, and the domain variable must
    equal the service's SERVER_NAME. Any mismatch would make every
    integration test fail, so it is a definition error.

YAML 1.1 Quirk:
    PyYAML parses the bare key ``on`` as boolean True. The reader maps it
    back to ``on`` before validation.
"""
import logging
from typing import Dict, List, Literal, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from covpipe.core.constants import ARTIFACT_NAME, REPORT_FILE
from covpipe.core.errors import DefinitionError

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


# ---------------------------------------------------------------------------
# Definition Models
# ---------------------------------------------------------------------------
class TriggerConfig(BaseModel):
    primary_branch: str = "main"
    push: bool = True
    pull_request: bool = True


class ConcurrencyConfig(BaseModel):
    group: str = "{workflow}-{ref}"
    # superseded runs are always cancelled, never queued
    cancel_in_progress: Literal[True] = True


class ServiceConfig(BaseModel):
    name: str
    image: str
    env: Dict[str, str] = {}
    port: int = Field(gt=0, lt=65536)
    health_path: str = "/health"
    ready_timeout: int = 120


class CacheConfig(BaseModel):
    prefix: str
    key_files: List[str] = []
    paths: List[str] = []


class EnvironmentConfig(BaseModel):
    image: Optional[str] = None
    system_packages: List[str] = []
    toolchain: str = ""
    delete_files: List[str] = []
    cache: Optional[CacheConfig] = None
    instrumentation: str = ""


class ConnectionConfig(BaseModel):
    url_var: str = "HOMESERVER_URL"
    url: str
    domain_var: str = "HOMESERVER_DOMAIN"
    domain: str


class CoverageConfig(BaseModel):
    command: str
    report: str = REPORT_FILE
    env: Dict[str, str] = {}
    connection: ConnectionConfig


class ArtifactConfig(BaseModel):
    name: str = ARTIFACT_NAME
    retention_days: int = 90
    if_no_files_found: Literal["error"] = "error"


class PipelineDefinition(BaseModel):
    """Validated pipeline definition."""

    name: str
    triggers: TriggerConfig = Field(default_factory=TriggerConfig, alias="on")
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    env: Dict[str, str] = {}
    service: ServiceConfig
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    coverage: CoverageConfig
    artifact: ArtifactConfig = Field(default_factory=ArtifactConfig)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _check_network_contract(self) -> "PipelineDefinition":
        conn = self.coverage.connection
        parsed = urlparse(conn.url)
        host = parsed.hostname or ""
        if host != self.service.name and host not in _LOCAL_HOSTS:
            raise ValueError(
                f"{conn.url_var} host '{host}' does not match service hostname "
                f"'{self.service.name}'"
            )
        if parsed.port != self.service.port:
            raise ValueError(
                f"{conn.url_var} port {parsed.port} does not match published "
                f"port {self.service.port}"
            )
        server_name = self.service.env.get("SERVER_NAME")
        if server_name is not None and server_name != conn.domain:
            raise ValueError(
                f"{conn.domain_var} '{conn.domain}' does not match service "
                f"SERVER_NAME '{server_name}'"
            )
        if self.coverage.report != REPORT_FILE:
            raise ValueError(
                f"coverage report must be written to {REPORT_FILE}, got {self.coverage.report}"
            )
        return self

    def group_for(self, ref: str) -> str:
        """Concurrency group key for a ref (workflow identity + ref)."""
        return self.concurrency.group.format(workflow=self.name, ref=ref)

    def runner_env(self) -> Dict[str, str]:
        """Environment for the coverage step: workflow env + coverage env + connection."""
        conn = self.coverage.connection
        env = dict(self.env)
        env.update(self.coverage.env)
        env[conn.url_var] = conn.url
        env[conn.domain_var] = conn.domain
        return env


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def parse_definition(content: str, source: str = "<string>") -> PipelineDefinition:
    """
    Parse and validate definition YAML text.

    Raises
    ------
    DefinitionError
        If the YAML is malformed or fails validation.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(f"Definition {source} must be a mapping")

    if True in data:
        data["on"] = data.pop(True)

    try:
        definition = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid definition {source}: {e}") from e

    logger.info(
        "Loaded pipeline '%s' | service=%s:%d | artifact=%s",
        definition.name, definition.service.name, definition.service.port,
        definition.artifact.name,
    )
    return definition


def load_definition(path: str) -> PipelineDefinition:
    """Read and validate the definition file at ``path``."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise DefinitionError(f"Could not read definition {path}: {e}") from e
    return parse_definition(content, source=path)

# ============================================================================
# PROVIDER CATALOG
# ============================================================================
# STATUS: Core - Provider-backed node type definitions
# PURPOSE: Load HTTP provider node types from YAML and register them
# CREATED: 19 OCT 2026
# ============================================================================
"""
Provider Catalog

Provider-backed node types are data, not code. Each YAML file in the
providers directory lists node types served by an HttpProviderAdapter:

    providers:
      - node_type: image-upscale
        provider: kapi
        base_url: https://api.kie.ai/api/v1
        submit_path: /jobs/createTask
        status_path: /jobs/recordInfo?taskId={task_id}
        api_key_env: KAPI_API_KEY
        task_id_field: data.taskId
        status_field: data.state
        result_field: data.resultJson.resultUrls.0
        error_field: data.failMsg

When PUBLIC_BASE_URL is set, adapters pass
{PUBLIC_BASE_URL}/api/v1/webhooks/{provider} as their callback URL.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from handlers.providers import HttpProviderAdapter
from handlers.registry import NodeTypeRegistry

logger = logging.getLogger(__name__)


class CatalogError(ValueError):
    """Raised when a provider definition is malformed."""
    pass


@dataclass
class ProviderDefinition:
    """One provider-backed node type."""
    node_type: str
    provider: str
    base_url: str
    submit_path: str = "/tasks"
    status_path: str = "/tasks/{task_id}"
    api_key_env: Optional[str] = None
    api_key_header: str = "Authorization"
    task_id_field: str = "task_id"
    status_field: str = "status"
    result_field: str = "result_url"
    error_field: str = "error"
    callback_field: str = "callback_url"
    static_body: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderDefinition":
        missing = [key for key in ("node_type", "provider", "base_url") if not data.get(key)]
        if missing:
            raise CatalogError(f"Provider definition missing {missing}: {data}")
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise CatalogError(f"Unknown provider fields {sorted(unknown)} in {data['node_type']}")
        return cls(**data)

    def build_adapter(self, public_base_url: Optional[str] = None) -> HttpProviderAdapter:
        callback_url = None
        if public_base_url:
            callback_url = f"{public_base_url.rstrip('/')}/api/v1/webhooks/{self.provider}"
        return HttpProviderAdapter(
            provider=self.provider,
            base_url=self.base_url,
            submit_path=self.submit_path,
            status_path=self.status_path,
            api_key=os.environ.get(self.api_key_env) if self.api_key_env else None,
            api_key_header=self.api_key_header,
            task_id_field=self.task_id_field,
            status_field=self.status_field,
            result_field=self.result_field,
            error_field=self.error_field,
            callback_url=callback_url,
            callback_field=self.callback_field,
            static_body=self.static_body,
        )


def load_catalog_file(path: Path) -> List[ProviderDefinition]:
    """Parse one catalog YAML file."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    entries = data.get("providers") or []
    if not isinstance(entries, list):
        raise CatalogError(f"{path}: 'providers' must be a list")
    return [ProviderDefinition.from_dict(entry) for entry in entries]


def load_catalog(
    registry: NodeTypeRegistry,
    providers_dir: Optional[str] = None,
    public_base_url: Optional[str] = None,
) -> int:
    """
    Register every provider definition found in providers_dir.

    A malformed file is logged and skipped; the others still load.

    Args:
        registry: Registry to add external node types to
        providers_dir: Directory of *.yaml / *.yml files (PROVIDERS_DIR)
        public_base_url: Base URL for webhook callbacks (PUBLIC_BASE_URL)

    Returns:
        Number of node types registered
    """
    directory = Path(providers_dir or os.environ.get("PROVIDERS_DIR", "./providers"))
    public_base_url = public_base_url or os.environ.get("PUBLIC_BASE_URL")
    if not directory.exists():
        logger.warning(f"Providers directory not found: {directory}")
        return 0

    count = 0
    files = sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml")))
    for path in files:
        try:
            definitions = load_catalog_file(path)
        except (OSError, yaml.YAMLError, CatalogError, TypeError) as e:
            logger.error(f"Failed to load {path}: {e}")
            continue
        for definition in definitions:
            registry.register_external(
                definition.node_type,
                definition.build_adapter(public_base_url),
                description=definition.description,
            )
            count += 1
            logger.info(f"Loaded provider node type: {definition.node_type} ({definition.provider})")

    logger.info(f"Loaded {count} provider node types from {directory}")
    return count


__all__ = [
    "ProviderDefinition",
    "CatalogError",
    "load_catalog",
    "load_catalog_file",
]

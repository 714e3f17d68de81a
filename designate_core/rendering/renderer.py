"""
Service Config Renderer — produces the config-data files for a service.

Thin data-shaping collaborator: it turns resolved dependency values into
``designate.conf`` and ``custom.conf``. All decisions about *when* to
render live in the reconciler.
"""

import hashlib
import json
from typing import Any, Dict, Protocol

from designate_core.models.entity import ManagedEntity

DATABASE_NAME = "designate"


class RenderError(Exception):
    """Raised when the configuration cannot be rendered."""
    pass


class ConfigRenderer(Protocol):
    """Protocol for config rendering — pluggable backend."""

    def render(
        self, entity: ManagedEntity, inputs: Dict[str, Any]
    ) -> Dict[str, str]: ...


def config_data_secret_name(entity: ManagedEntity) -> str:
    return f"{entity.name}-config-data"


def config_hash(files: Dict[str, str]) -> str:
    """Stable hash over rendered files."""
    payload = json.dumps(files, sort_keys=True).encode()
    return hashlib.sha256(payload).hexdigest()


class ServiceConfigRenderer:
    """Renders INI configuration from resolved inputs."""

    def render(
        self, entity: ManagedEntity, inputs: Dict[str, Any]
    ) -> Dict[str, str]:
        try:
            password = inputs["service_password"]
            db_user = inputs["database_username"]
            db_password = inputs["database_password"]
        except KeyError as e:
            raise RenderError(f"Missing rendering input {e.args[0]}") from e

        spec = entity.spec
        lines = ["[DEFAULT]"]
        if inputs.get("transport_url"):
            lines.append(f"transport_url={inputs['transport_url']}")
        lines += [
            "",
            "[database]",
            (
                f"connection=mysql+pymysql://{db_user}:{db_password}@"
                f"{spec.database_hostname}/{DATABASE_NAME}"
                "?read_default_file=/etc/my.cnf"
            ),
            "",
            "[keystone_authtoken]",
            f"username={spec.service_user}",
            f"password={password}",
            "",
        ]
        return {
            "designate.conf": "\n".join(lines),
            "custom.conf": spec.custom_service_config,
        }

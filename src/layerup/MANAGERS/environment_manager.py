# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Resolution of the deployment environment: the env file, generated secrets
and the selected variant.
"""
import logging
import os
import secrets
from typing import Callable, Dict, Optional

from dotenv import dotenv_values
from jinja2 import Template

from ..MODELS.orchestration_config import DeploymentConfig, DeploymentContext
from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_FILE_TEMPLATE = """\
# Deployment environment generated by layerup
{% if variant %}# Variant: {{ variant }}
{% endif %}
{% for key, value in environment.items() %}
{{ key }}={{ value }}
{% endfor %}
"""


def _quote(value: str) -> str:
    if value == "" or any(c in value for c in " #'\"\\$\t"):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


class EnvironmentManager:
    """
    Builds the immutable DeploymentContext handed to the start collaborator.

    Precedence, lowest first: config defaults, env file, variant.
    """
    def __init__(self,
                 base_dir: str = ".",
                 token_factory: Callable[[int], str] = secrets.token_hex):
        """
        Initializes the environment manager.

        :param base_dir: Directory the env file path is relative to.
        :param token_factory: Produces a secret from a byte length.
        """
        self.base_dir = base_dir
        self.template = Template(ENV_FILE_TEMPLATE, trim_blocks=True)
        self.token_factory = token_factory

    def env_file_path(self, env_file: str) -> str:
        return os.path.join(self.base_dir, env_file)

    def ensure_env_file(self,
                        env_file: str,
                        defaults: Dict[str, str],
                        secret_lengths: Dict[str, int],
                        variant: Optional[str] = None) -> bool:
        """
        Writes the env file with defaults and fresh secrets, unless it exists.
        An existing file is never touched, so secrets are written only once.

        :return: True if the file was created.
        """
        path = self.env_file_path(env_file)
        if os.path.exists(path):
            logger.info("%s already exists, skipping creation.", env_file)
            return False

        values = dict(defaults)
        for name, length in secret_lengths.items():
            values[name] = self.token_factory(length)

        content = self.template.render(
            variant=variant,
            environment={k: _quote(v) for k, v in values.items()},
        )

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # created private, the secrets are never readable by others
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)

        logger.warning("Created %s with default settings. Please review and modify as needed!", env_file)
        return True

    def load_env_file(self, env_file: str) -> Dict[str, str]:
        values = dotenv_values(self.env_file_path(env_file))
        return {k: v if v is not None else "" for k, v in values.items()}

    def resolve(self, config: DeploymentConfig, variant: Optional[str] = None) -> DeploymentContext:
        """
        Resolves the environment for a deployment.

        :param config: The deployment configuration.
        :param variant: Variant name overriding the one in the config.
        :raises ConfigError: If the variant is unknown.
        """
        variant_name = variant or config.variant
        if variant_name and variant_name not in config.variants:
            known = ", ".join(sorted(config.variants)) or "none defined"
            raise ConfigError(f"Unknown variant '{variant_name}' (known: {known})")

        environment = dict(config.environment)
        if config.env_file:
            self.ensure_env_file(config.env_file, config.environment, config.secrets, variant_name)
            environment.update(self.load_env_file(config.env_file))
        else:
            for name, length in config.secrets.items():
                environment.setdefault(name, self.token_factory(length))

        if variant_name:
            environment.update(config.variants[variant_name].environment)

        return DeploymentContext(variant=variant_name, environment=environment)

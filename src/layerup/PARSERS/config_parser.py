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
Parser for layerup deployment files (YAML).
"""
import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..MODELS.orchestration_config import DeploymentConfig
from ..RUNNERS.dependency_resolver import ServiceGraph
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..exceptions import ConfigError

logger = logging.getLogger(__name__)


class ConfigParser:
    """
    Parser for deployment files such as:

        services:
          db:
            start: docker compose up -d db
            readiness: {kind: tcp, host: localhost, port: 5432}
            max_wait_seconds: 30
          web:
            depends_on: [db]
            readiness: {kind: http, url: "http://localhost:${WEB_PORT:-8000}/"}
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for ${VAR} interpolation; defaults to os.environ.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, config_path: str) -> DeploymentConfig:
        """
        Parses a deployment file. A relative project_dir is taken relative
        to the directory holding the file.

        :param config_path: Path to the deployment file.
        :raises ConfigError: If the file is unreadable or invalid.
        """
        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e

        config = self.parse_from_string(content)
        base_dir = os.path.dirname(os.path.abspath(config_path))
        project_dir = os.path.normpath(os.path.join(base_dir, config.project_dir))
        return config.model_copy(update={"project_dir": project_dir})

    def parse_from_string(self, content: str) -> DeploymentConfig:
        """
        Parses a deployment file from a string.

        :param content: YAML content.
        :raises ConfigError: If the YAML or the resulting config is invalid.
        """
        missing: List[str] = []
        content = EnvironmentInterpolator.interpolate(content, self.context, missing)
        for name in sorted(set(missing)):
            logger.warning("Variable %s is not set, defaulting to a blank string.", name)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError("Deployment file must be a mapping with a 'services' key")
        if not data.get('services'):
            raise ConfigError("Deployment file defines no services")

        try:
            return DeploymentConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid deployment file:\n{e}") from e

    @staticmethod
    def build_graph(config: DeploymentConfig) -> ServiceGraph:
        """
        Builds the service graph. Dependencies are validated later, by the run.

        :raises DuplicateServiceError: If two services share a name.
        """
        return ServiceGraph(config.services)

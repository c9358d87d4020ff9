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
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List, Optional


class EnvironmentInterpolator:
    """
    Interpolates ${VAR}, ${VAR:-default} and ${VAR:+value}; $$ is a literal $.
    """
    PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')

    @classmethod
    def interpolate(cls,
                    template: str,
                    context: Dict[str, str],
                    missing: Optional[List[str]] = None) -> str:
        """
        Interpolates environment variables in the template string.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param missing: When given, unset plain ${VAR} references become ''
                        and their names are appended here instead of raising.
        :return: The interpolated string.
        :raises KeyError: If a plain ${VAR} is unset and missing is None.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'

            var_name, modifier, alt_value = match.groups()
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if missing is None:
                raise KeyError(f"Variable {var_name} not found in context")
            missing.append(var_name)
            return ''

        return cls.PATTERN.sub(replace, template)

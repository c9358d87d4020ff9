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
Network primitives used by readiness probes.
"""
import socket
from urllib.error import HTTPError
from urllib.request import HTTPRedirectHandler, Request, build_opener


class _NoRedirect(HTTPRedirectHandler):
    """Surface 3xx responses instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


_opener = build_opener(_NoRedirect)


def dial(host: str, port: int, timeout: float) -> None:
    """
    Opens a TCP connection and closes it straight away.

    :raises OSError: If the connection is refused or times out.
    """
    with socket.create_connection((host, port), timeout=timeout):
        pass


def http_get(url: str, timeout: float) -> int:
    """
    Issues a GET and returns the response status code.
    Error statuses are returned, not raised; 3xx is not followed.

    :raises OSError: On transport failure (URLError, timeouts, resets).
    """
    request = Request(url, method="GET", headers={"User-Agent": "layerup-probe"})
    try:
        with _opener.open(request, timeout=timeout) as response:
            return response.status
    except HTTPError as e:
        e.close()
        return e.code


def get_free_port() -> int:
    """
    Finds a port on localhost that nothing is listening on.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

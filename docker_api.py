"""Docker Engine API client over Unix socket.

Talks to the Docker Engine API through the mounted /var/run/docker.sock
(or the socket named by ``DOCKER_HOST``) with direct HTTP requests.
Uses only the standard library (http.client, socket).
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Docker Engine API version, compatible with Docker 20.10+
API_VERSION = "v1.41"
DEFAULT_SOCKET = "/var/run/docker.sock"

DEFAULT_TIMEOUT = 30
PULL_TIMEOUT = 300


class DockerAPIError(Exception):
    """Error from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: float = DEFAULT_TIMEOUT):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def socket_path_from_host(host: Optional[str]) -> str:
    """Resolve a ``DOCKER_HOST`` style value to a socket path."""
    if not host:
        return DEFAULT_SOCKET
    if host.startswith("unix://"):
        return host[len("unix://"):]
    if "://" in host:
        raise ValueError(f"Unsupported DOCKER_HOST {host!r}: only unix:// sockets are supported")
    return host


class DockerClient:
    """Client for the Docker Engine API over Unix socket.

    Constructed once at startup and shared by every update; it holds no
    container or image state between calls.
    """

    def __init__(self, socket_path: Optional[str] = None):
        if socket_path is None:
            socket_path = socket_path_from_host(os.environ.get("DOCKER_HOST", ""))
        self._socket_path = socket_path

    @property
    def socket_path(self) -> str:
        return self._socket_path

    def _request(self, method: str, path: str, body: Any = None,
                 query: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None, stream: bool = False) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Creates a fresh connection per call (Docker socket is local so
        the overhead is negligible and avoids stale-connection issues).

        Returns parsed JSON for most calls.  When *stream* is True the
        response body is drained line-by-line, progress objects are
        discarded and an ``error`` object in the stream raises
        DockerAPIError (used for ``POST /images/create``).
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        headers: Dict[str, str] = {}
        encoded_body: Optional[bytes] = None

        if body is not None:
            encoded_body = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        conn = UnixHTTPConnection(self._socket_path,
                                  timeout=timeout if timeout is not None else DEFAULT_TIMEOUT)
        try:
            conn.request(method, url, body=encoded_body, headers=headers)
            response = conn.getresponse()

            if stream and response.status < 400:
                self._drain_stream(response)
                return None

            raw = response.read().decode("utf-8", errors="replace")

            if response.status == 204:
                return None

            if response.status >= 400:
                # Try to extract message from JSON error body
                try:
                    err = json.loads(raw)
                    msg = err.get("message", raw)
                except (json.JSONDecodeError, AttributeError):
                    msg = raw
                raise DockerAPIError(response.status, msg.strip())

            if not raw:
                return None

            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                # Plain-text endpoints such as /_ping
                return raw
        finally:
            conn.close()

    @staticmethod
    def _drain_stream(response) -> None:
        while True:
            line = response.readline()
            if not line:
                break
            line = line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict) and "error" in obj:
                raise DockerAPIError(
                    response.status or 500,
                    (obj.get("errorDetail") or {}).get("message", obj["error"])
                )

    # ── System ────────────────────────────────────────────────────

    def ping(self, timeout: Optional[float] = None) -> None:
        """Check that the daemon answers on the socket."""
        try:
            self._request("GET", "/_ping", timeout=timeout)
        except OSError as e:
            raise DockerAPIError(0, f"cannot reach Docker daemon at {self._socket_path}: {e}")

    # ── Image operations ──────────────────────────────────────────

    def pull_image(self, image: str, tag: str,
                   timeout: Optional[float] = PULL_TIMEOUT) -> None:
        """Pull an image from a registry and wait for the pull to finish.

        Equivalent to ``docker pull image:tag``.
        """
        self._request(
            "POST", "/images/create",
            query={"fromImage": image, "tag": tag},
            timeout=timeout,
            stream=True,
        )

    def remove_image(self, image_ref: str,
                     timeout: Optional[float] = None) -> List[Dict[str, str]]:
        """Remove an image (not forced).

        Returns the list of ``{"Untagged": ...}`` / ``{"Deleted": ...}``
        entries reported by the daemon.
        """
        result = self._request("DELETE", f"/images/{image_ref}", timeout=timeout)
        return result or []

    def tag_image(self, image_ref: str, repository: str, tag: str,
                  timeout: Optional[float] = None) -> None:
        """Point repository:tag at an existing image (``docker tag``)."""
        self._request(
            "POST", f"/images/{image_ref}/tag",
            query={"repo": repository, "tag": tag},
            timeout=timeout,
        )

    # ── Container operations ──────────────────────────────────────

    def list_containers(self, all: bool = False,
                        timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """List containers (running only unless *all*).

        Returns list of dicts with keys like ``Id``, ``Names`` (list with
        ``/`` prefix), ``Image``, ``State``.
        """
        query = {}
        if all:
            query["all"] = "true"
        result = self._request("GET", "/containers/json", query=query, timeout=timeout)
        return result or []

    def inspect_container(self, id_or_name: str,
                          timeout: Optional[float] = None) -> Dict[str, Any]:
        """Inspect a container (equivalent to ``docker inspect``).

        Returns the full container JSON object.
        """
        return self._request("GET", f"/containers/{id_or_name}/json", timeout=timeout)

    def create_container(self, name: str, config: Dict[str, Any],
                         timeout: Optional[float] = None) -> str:
        """Create a container.  Returns the new container ID.

        *config* is the create body: container config fields plus optional
        ``HostConfig`` and ``NetworkingConfig``.
        """
        result = self._request(
            "POST", "/containers/create",
            body=config,
            query={"name": name},
            timeout=timeout,
        )
        return result["Id"]

    def start_container(self, id_or_name: str,
                        timeout: Optional[float] = None) -> None:
        """Start an existing container."""
        self._request("POST", f"/containers/{id_or_name}/start", timeout=timeout)

    def remove_container(self, id_or_name: str, force: bool = False,
                         timeout: Optional[float] = None) -> None:
        """Remove a container, killing it first when *force* is set."""
        query = {"force": "true"} if force else None
        self._request("DELETE", f"/containers/{id_or_name}",
                      query=query, timeout=timeout)

    # ── Network operations ────────────────────────────────────────

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None,
                        timeout: Optional[float] = None) -> None:
        """Connect a container to a network."""
        body: Dict[str, Any] = {"Container": container_id}
        if endpoint_config:
            body["EndpointConfig"] = endpoint_config
        self._request(
            "POST", f"/networks/{network}/connect",
            body=body,
            timeout=timeout,
        )

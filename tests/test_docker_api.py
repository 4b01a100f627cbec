"""Tests for the Docker Engine API client (no real socket)."""

import io
import json
from unittest.mock import MagicMock, patch

import pytest

from docker_api import (
    API_VERSION, DEFAULT_SOCKET, DockerAPIError, DockerClient, socket_path_from_host,
)


class FakeResponse:
    """Minimal http.client.HTTPResponse replacement."""

    def __init__(self, status=200, body=b""):
        self.status = status
        self._buf = io.BytesIO(body if isinstance(body, bytes) else body.encode())

    def read(self):
        return self._buf.read()

    def readline(self):
        return self._buf.readline()


@pytest.fixture
def conn():
    """Patch UnixHTTPConnection and return the connection mock."""
    with patch("docker_api.UnixHTTPConnection") as conn_cls:
        connection = MagicMock()
        conn_cls.return_value = connection
        connection.conn_cls = conn_cls
        yield connection


def _respond(conn, status=200, body=b""):
    conn.getresponse.return_value = FakeResponse(status, body)


class TestSocketPath:
    def test_default(self):
        assert socket_path_from_host("") == DEFAULT_SOCKET
        assert socket_path_from_host(None) == DEFAULT_SOCKET

    def test_unix_scheme(self):
        assert socket_path_from_host("unix:///run/user/1000/docker.sock") == "/run/user/1000/docker.sock"

    def test_plain_path(self):
        assert socket_path_from_host("/tmp/docker.sock") == "/tmp/docker.sock"

    def test_tcp_rejected(self):
        with pytest.raises(ValueError):
            socket_path_from_host("tcp://10.0.0.1:2375")

    def test_env(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "unix:///custom.sock")
        assert DockerClient().socket_path == "/custom.sock"


class TestRequests:
    def test_list_containers(self, conn):
        _respond(conn, 200, json.dumps([{"Id": "abc", "Image": "app:1.0"}]))
        result = DockerClient("/sock").list_containers()
        assert result == [{"Id": "abc", "Image": "app:1.0"}]
        conn.request.assert_called_once_with(
            "GET", f"/{API_VERSION}/containers/json", body=None, headers={}
        )
        conn.close.assert_called_once()

    def test_remove_container_force(self, conn):
        _respond(conn, 204)
        DockerClient("/sock").remove_container("abc", force=True)
        method, url = conn.request.call_args.args
        assert method == "DELETE"
        assert url == f"/{API_VERSION}/containers/abc?force=true"

    def test_create_container(self, conn):
        _respond(conn, 201, json.dumps({"Id": "new123", "Warnings": []}))
        body = {"Image": "app:1.3.0", "HostConfig": {"NetworkMode": "bridge"}}
        new_id = DockerClient("/sock").create_container("web", body)
        assert new_id == "new123"
        method, url = conn.request.call_args.args
        assert url == f"/{API_VERSION}/containers/create?name=web"
        assert json.loads(conn.request.call_args.kwargs["body"]) == body
        assert conn.request.call_args.kwargs["headers"] == {"Content-Type": "application/json"}

    def test_connect_network_with_endpoint(self, conn):
        _respond(conn, 200)
        DockerClient("/sock").connect_network("backend", "abc", {"Aliases": ["api"]})
        sent = json.loads(conn.request.call_args.kwargs["body"])
        assert sent == {"Container": "abc", "EndpointConfig": {"Aliases": ["api"]}}

    def test_remove_image_returns_entries(self, conn):
        _respond(conn, 200, json.dumps([{"Untagged": "app:1.2.0"}, {"Deleted": "sha256:x"}]))
        assert DockerClient("/sock").remove_image("sha256:x") == [
            {"Untagged": "app:1.2.0"}, {"Deleted": "sha256:x"}
        ]

    def test_tag_image(self, conn):
        _respond(conn, 201)
        DockerClient("/sock").tag_image("sha256:x", "docker.io/library/app", "latest")
        method, url = conn.request.call_args.args
        assert method == "POST"
        assert url == f"/{API_VERSION}/images/sha256:x/tag?repo=docker.io%2Flibrary%2Fapp&tag=latest"

    def test_error_message_extracted(self, conn):
        _respond(conn, 404, json.dumps({"message": "No such container: abc"}))
        with pytest.raises(DockerAPIError) as exc:
            DockerClient("/sock").inspect_container("abc")
        assert exc.value.status == 404
        assert exc.value.message == "No such container: abc"

    def test_non_json_error(self, conn):
        _respond(conn, 500, "server exploded")
        with pytest.raises(DockerAPIError) as exc:
            DockerClient("/sock").start_container("abc")
        assert exc.value.message == "server exploded"

    def test_timeout_passed_to_connection(self, conn):
        _respond(conn, 200, "[]")
        DockerClient("/sock").list_containers(timeout=7)
        conn.conn_cls.assert_called_once_with("/sock", timeout=7)


class TestPull:
    def test_stream_drained(self, conn):
        lines = [
            {"status": "Pulling from library/app", "id": "1.3.0"},
            {"status": "Downloading", "progressDetail": {"current": 1, "total": 2}},
            {"status": "Status: Downloaded newer image for app:1.3.0"},
        ]
        response = FakeResponse(200, "\n".join(json.dumps(line) for line in lines) + "\n")
        conn.getresponse.return_value = response

        DockerClient("/sock").pull_image("docker.io/library/app", "1.3.0")

        method, url = conn.request.call_args.args
        assert method == "POST"
        assert url.startswith(f"/{API_VERSION}/images/create?")
        assert "fromImage=docker.io%2Flibrary%2Fapp" in url
        assert "tag=1.3.0" in url
        assert response.read() == b""

    def test_error_in_stream(self, conn):
        body = "\n".join([
            json.dumps({"status": "Pulling"}),
            json.dumps({"errorDetail": {"message": "manifest unknown"}, "error": "manifest unknown"}),
        ])
        _respond(conn, 200, body)
        with pytest.raises(DockerAPIError, match="manifest unknown"):
            DockerClient("/sock").pull_image("docker.io/library/app", "9.9.9")

    def test_http_error(self, conn):
        _respond(conn, 404, json.dumps({"message": "pull access denied"}))
        with pytest.raises(DockerAPIError) as exc:
            DockerClient("/sock").pull_image("docker.io/library/app", "1.0.0")
        assert exc.value.status == 404


class TestPing:
    def test_ok(self, conn):
        _respond(conn, 200, "OK")
        DockerClient("/sock").ping()

    def test_socket_missing(self, conn):
        conn.request.side_effect = FileNotFoundError("No such file or directory")
        with pytest.raises(DockerAPIError, match="cannot reach Docker daemon"):
            DockerClient("/missing.sock").ping()

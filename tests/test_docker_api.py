"""Tests for the Engine API client with the socket connection mocked out."""

import json
import urllib.parse
from unittest.mock import Mock, patch

import pytest

from docker_api import DockerAPIError, DockerClient


def _connection(status=200, body=""):
    conn = Mock()
    response = Mock(status=status)
    response.read.return_value = body.encode("utf-8")
    conn.getresponse.return_value = response
    return conn


@pytest.fixture
def client():
    return DockerClient("/tmp/test.sock")


class TestSocketPath:

    def test_docker_host_unix(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "unix:///run/user/1000/docker.sock")
        assert DockerClient().socket_path == "/run/user/1000/docker.sock"

    def test_docker_host_tcp_ignored(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://10.0.0.1:2375")
        assert DockerClient().socket_path == "/var/run/docker.sock"


class TestRequests:

    @patch("docker_api.UnixHTTPConnection")
    def test_ping(self, mock_conn, client):
        mock_conn.return_value = _connection(body="OK")
        assert client.ping()
        assert mock_conn.return_value.request.call_args[0] == ("GET", "/v1.41/_ping")

    @patch("docker_api.UnixHTTPConnection")
    def test_error_message_decoded(self, mock_conn, client):
        mock_conn.return_value = _connection(404, json.dumps({"message": "No such container: x"}))

        with pytest.raises(DockerAPIError) as exc:
            client.inspect_container("x")

        assert exc.value.status == 404
        assert exc.value.message == "No such container: x"

    @patch("docker_api.UnixHTTPConnection")
    def test_remove_in_use_returns_false(self, mock_conn, client):
        mock_conn.return_value = _connection(409, '{"message": "image is being used"}')
        assert client.remove_image("dockcheck/web:2024-01-01_0000_latest") is False

    @patch("docker_api.UnixHTTPConnection")
    def test_remove_server_error_propagates(self, mock_conn, client):
        mock_conn.return_value = _connection(500, "boom")
        with pytest.raises(DockerAPIError):
            client.remove_image("x")

    @patch("docker_api.UnixHTTPConnection")
    def test_pull_stream_error(self, mock_conn, client):
        body = "\n".join([
            json.dumps({"status": "Pulling from library/nginx"}),
            json.dumps({"error": "manifest unknown", "errorDetail": {"message": "manifest for nginx:nope not found"}}),
        ])
        mock_conn.return_value = _connection(200, body)

        with pytest.raises(DockerAPIError, match="not found"):
            client.pull_image("library/nginx", "nope")

    @patch("docker_api.UnixHTTPConnection")
    def test_list_images_reference_filter(self, mock_conn, client):
        mock_conn.return_value = _connection(body="[]")

        assert client.list_images("dockcheck/*") == []

        url = mock_conn.return_value.request.call_args[0][1]
        query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
        assert json.loads(query["filters"][0]) == {"reference": ["dockcheck/*"]}

    @patch("docker_api.UnixHTTPConnection")
    def test_socket_error_is_oserror(self, mock_conn, client):
        mock_conn.return_value.request.side_effect = FileNotFoundError(2, "No such file")
        with pytest.raises(OSError):
            client.ping()
        mock_conn.return_value.close.assert_called_once()

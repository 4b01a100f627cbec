"""Shared fixtures for docker-updater tests."""

import copy
from typing import Any, Dict, List, Optional

import pytest

from docker_api import DockerAPIError
from image_utils import InvalidReference, normalize_reference
from updater import ContainerUpdater, DEFAULT_CONFIG


def _ref_key(image: str) -> str:
    """Canonical key for an image reference ('app' -> 'docker.io/library/app:latest')."""
    try:
        ref = normalize_reference(image)
    except InvalidReference:
        return image
    return f"{ref.name}:{ref.tag or 'latest'}"


class FakeDockerClient:
    """In-memory stand-in for DockerClient.

    Keeps containers as inspect-style dicts and images as a reference -> id
    map.  Every call is recorded in ``calls``; ``fail_next`` makes the next
    call(s) of a method raise.
    """

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, str] = {}
        self.image_ids: set = set()
        self.calls: List[tuple] = []
        self.removed_images: List[str] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._next_id = 0

    # ── test helpers ──────────────────────────────────────────────

    def add_container(self, name: str, image: str, networks: Optional[Dict[str, Any]] = None,
                      network_mode: str = "default", running: bool = True) -> str:
        key = _ref_key(image)
        image_id = self.images.setdefault(key, f"sha256:old-{key}")
        self.image_ids.add(image_id)
        container_id = f"{name}-{len(self.containers):04d}".ljust(64, "0")
        if networks is None:
            networks = {"bridge": {"NetworkID": "net-bridge", "Aliases": None}}
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": image_id,
            "Config": {
                "Image": image,
                "Hostname": container_id[:12],
                "Env": ["APP_MODE=production", "PATH=/usr/bin"],
                "Labels": {"com.example.role": name},
                "Cmd": ["serve"],
            },
            "HostConfig": {
                "NetworkMode": network_mode,
                "RestartPolicy": {"Name": "unless-stopped"},
                "Binds": [f"/srv/{name}:/data"],
            },
            "NetworkSettings": {"Networks": copy.deepcopy(networks)},
            "State": {"Running": running},
        }
        return container_id

    def fail_next(self, method: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        exc = exc or DockerAPIError(500, f"{method} failed")
        self._failures.setdefault(method, []).extend([exc] * times)

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for info in self.containers.values():
            if info["Name"] == f"/{name}":
                return info
        return None

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _get(self, container_id: str) -> Dict[str, Any]:
        if container_id not in self.containers:
            raise DockerAPIError(404, f"No such container: {container_id}")
        return self.containers[container_id]

    # ── DockerClient API ──────────────────────────────────────────

    def ping(self, timeout=None):
        self._record("ping")

    def list_containers(self, all=False, timeout=None):
        self._record("list_containers")
        return [
            {
                "Id": info["Id"],
                "Names": [info["Name"]],
                "Image": info["Config"]["Image"],
                "State": "running" if info["State"]["Running"] else "exited",
            }
            for info in self.containers.values()
            if all or info["State"]["Running"]
        ]

    def inspect_container(self, id_or_name, timeout=None):
        self._record("inspect_container", id_or_name)
        return copy.deepcopy(self._get(id_or_name))

    def remove_container(self, id_or_name, force=False, timeout=None):
        self._record("remove_container", id_or_name, force)
        self._get(id_or_name)
        del self.containers[id_or_name]

    def create_container(self, name, config, timeout=None):
        self._record("create_container", name, copy.deepcopy(config))
        if self.by_name(name):
            raise DockerAPIError(409, f'Conflict. The container name "/{name}" is already in use')
        config = copy.deepcopy(config)
        key = _ref_key(config["Image"])
        if key not in self.images:
            raise DockerAPIError(404, f"No such image: {config['Image']}")

        host_config = config.pop("HostConfig", {})
        networking = config.pop("NetworkingConfig", {}) or {}
        self._next_id += 1
        container_id = f"new{self._next_id}".ljust(64, "0")
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": self.images[key],
            "Config": config,
            "HostConfig": host_config,
            "NetworkSettings": {"Networks": dict(networking.get("EndpointsConfig") or {})},
            "State": {"Running": False},
        }
        return container_id

    def connect_network(self, network, container_id, endpoint_config=None, timeout=None):
        self._record("connect_network", network, container_id)
        self._get(container_id)["NetworkSettings"]["Networks"][network] = endpoint_config or {}

    def start_container(self, id_or_name, timeout=None):
        self._record("start_container", id_or_name)
        self._get(id_or_name)["State"]["Running"] = True

    def pull_image(self, image, tag, timeout=None):
        self._record("pull_image", image, tag)
        self.images[f"{image}:{tag}"] = f"sha256:pulled-{image}:{tag}"
        self.image_ids.add(self.images[f"{image}:{tag}"])

    def tag_image(self, image_ref, repository, tag, timeout=None):
        self._record("tag_image", image_ref, repository, tag)
        if image_ref not in self.image_ids:
            raise DockerAPIError(404, f"No such image: {image_ref}")
        self.images[_ref_key(f"{repository}:{tag}")] = image_ref

    def remove_image(self, image_ref, timeout=None):
        self._record("remove_image", image_ref)
        in_use = [c["Name"] for c in self.containers.values() if c["Image"] == image_ref]
        if in_use:
            raise DockerAPIError(409, f"conflict: unable to delete {image_ref} (image is being used)")
        tags = [ref for ref, image_id in self.images.items() if image_id == image_ref]
        for ref in tags:
            del self.images[ref]
        self.image_ids.discard(image_ref)
        self.removed_images.append(image_ref)
        return [{"Untagged": ref} for ref in tags] + [{"Deleted": image_ref}]


@pytest.fixture
def docker():
    """Empty fake Docker daemon."""
    return FakeDockerClient()


@pytest.fixture
def make_updater(docker):
    """Factory for a ContainerUpdater on the fake daemon with config overrides."""
    def _make(**overrides) -> ContainerUpdater:
        config = {**DEFAULT_CONFIG, **overrides}
        return ContainerUpdater(docker, config)
    return _make


@pytest.fixture
def updater(make_updater):
    """ContainerUpdater with default settings."""
    return make_updater()

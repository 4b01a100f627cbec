#!/usr/bin/env python3
"""
Docker Container Updater

Receives "image updated" notifications (repository + tag), selects the
running containers that are behind the new tag, pulls the image and
recreates each affected container in place, keeping its configuration,
networks and name.  The superseded image is removed when nothing uses it
any more.
"""

__version__ = "1.0.0"

import argparse
import copy
import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import jsonschema

from docker_api import DockerClient, DockerAPIError, DEFAULT_TIMEOUT, PULL_TIMEOUT, socket_path_from_host
from image_utils import InvalidReference, image_for_tag, normalize_reference, split_image_ref
from notify import EVENT_APPLIED, EVENT_FAILED, send_notifications
from version_utils import LATEST_TAG, InvalidVersion, should_update

LOGGER_NAME = "updater"

# Error kinds reported on UpdateResult.error_kind
ERR_VALIDATION = "validation"
ERR_ENUMERATION = "enumeration"
ERR_REFERENCE = "reference"
ERR_PULL = "pull"
ERR_RECREATION = "recreation"
ERR_TIMEOUT = "timeout"

# Per-container recreation states, in order
STATE_SELECTED = "selected"
STATE_INSPECTED = "inspected"
STATE_REMOVED = "removed"
STATE_CREATED = "created"
STATE_STARTED = "started"
STATE_IMAGE_RECLAIMED = "image_reclaimed"
STATE_FAILED = "failed"
STATE_RESTORED = "restored"

DEFAULT_CONFIG: Dict[str, Any] = {
    "docker_host": None,
    "update_timeout": 0,
    "cleanup_old_images": True,
    "restore_on_failure": True,
    "dry_run": False,
    "notifications": None,
}

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "docker_host": {"type": "string"},
        "update_timeout": {"type": "integer", "minimum": 0},
        "cleanup_old_images": {"type": "boolean"},
        "restore_on_failure": {"type": "boolean"},
        "dry_run": {"type": "boolean"},
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {
                            "type": "string",
                            "enum": ["min", "low", "default", "high", "urgent"]
                        },
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        }
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string", "enum": ["POST", "PUT", "post", "put"]},
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        },
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        }
    },
    "additionalProperties": False
}


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Setup logging configuration."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S %Z'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from an optional JSON file plus environment.

    The file is validated against CONFIG_SCHEMA.  Environment variables
    ``DOCKER_HOST``, ``DRY_RUN`` and ``UPDATE_TIMEOUT`` override it.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    logger = logging.getLogger(LOGGER_NAME)

    if config_file:
        try:
            with open(config_file, 'r') as f:
                file_config = json.load(f)
            jsonschema.validate(file_config, CONFIG_SCHEMA)
        except FileNotFoundError:
            logger.error(f"Config file {config_file} not found")
            raise
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing config file: {e}")
            raise
        except jsonschema.ValidationError as e:
            logger.error(f"Configuration validation failed: {e.message}")
            raise
        config.update(file_config)

    if os.environ.get('DOCKER_HOST'):
        config['docker_host'] = os.environ['DOCKER_HOST']
    if os.environ.get('DRY_RUN'):
        config['dry_run'] = os.environ['DRY_RUN'].lower() == 'true'
    if os.environ.get('UPDATE_TIMEOUT'):
        config['update_timeout'] = int(os.environ['UPDATE_TIMEOUT'])

    return config


@dataclass
class ContainerOutcome:
    """How far one container got through the recreation sequence."""
    container_id: str
    name: str
    old_image: str
    new_image: str
    state: str = STATE_SELECTED
    new_container_id: Optional[str] = None
    image_reclaimed: bool = False
    restored: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class UpdateResult:
    """Outcome of one apply_update call."""
    repository: str
    tag: str
    ok: bool = True
    error: Optional[str] = None
    error_kind: Optional[str] = None
    selected: List[str] = field(default_factory=list)
    outcomes: List[ContainerOutcome] = field(default_factory=list)
    pull_seconds: Optional[float] = None
    dry_run: bool = False

    def fail(self, kind: str, message: str) -> "UpdateResult":
        self.ok = False
        self.error_kind = kind
        self.error = message
        return self

    @property
    def updated(self) -> List[str]:
        """Names of containers that now run the new image."""
        return [o.name for o in self.outcomes
                if o.state in (STATE_STARTED, STATE_IMAGE_RECLAIMED)]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeadlineExceeded(Exception):
    """Raised when an update runs past its request deadline."""


class Deadline:
    """Request-scoped deadline shared by every runtime call of one update.

    A non-positive *seconds* means no deadline; calls then use their own
    default timeout.
    """

    def __init__(self, seconds: float = 0):
        self._expires = time.monotonic() + seconds if seconds and seconds > 0 else None

    def timeout(self, default: float = DEFAULT_TIMEOUT) -> float:
        if self._expires is None:
            return default
        remaining = self._expires - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceeded("update deadline exceeded")
        return min(default, remaining)


class RepositoryLocks:
    """One lock per repository so updates of the same image never overlap.

    A repository's entry is dropped once no update holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, List[Any]] = {}  # repository -> [lock, users]
        self._locks_lock = threading.Lock()

    def __len__(self) -> int:
        with self._locks_lock:
            return len(self._locks)

    def busy(self, repository: str) -> bool:
        with self._locks_lock:
            entry = self._locks.get(repository)
            return entry is not None and entry[0].locked()

    @contextmanager
    def hold(self, repository: str) -> Iterator[None]:
        with self._locks_lock:
            entry = self._locks.setdefault(repository, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[repository]


ProgressCallback = Callable[[str, Dict[str, Any]], None]


class ContainerUpdater:
    def __init__(self, docker: DockerClient, config: Optional[Dict[str, Any]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the updater.

        Args:
            docker: Runtime client, constructed once at startup and shared
            config: Settings as returned by load_config (defaults if None)
            logger: Logger to use (the 'updater' logger if None)
        """
        self.docker = docker
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.locks = RepositoryLocks()

    @property
    def dry_run(self) -> bool:
        return bool(self.config.get('dry_run'))

    def apply_update(self, repository: str, tag: str,
                     progress_callback: Optional[ProgressCallback] = None) -> UpdateResult:
        """Update every running container of *repository* that is behind *tag*.

        Args:
            repository: Repository name without tag (e.g. 'user/app')
            tag: New tag, either 'latest' or a semantic version
            progress_callback: Optional function(event_type, data) called for progress updates

        Returns:
            UpdateResult; on failure ``error``/``error_kind`` describe the
            first fatal error and ``outcomes`` show how far each container got.
        """
        repository = (repository or '').strip()
        tag = (tag or '').strip()
        result = UpdateResult(repository=repository, tag=tag, dry_run=self.dry_run)

        if not repository or not tag:
            return result.fail(ERR_VALIDATION, "repo and tag must be filled")

        def emit(event_type: str, data: Dict[str, Any]) -> None:
            if progress_callback:
                progress_callback(event_type, {'repository': repository, 'tag': tag, **data})

        if self.locks.busy(repository):
            self.logger.info(f"Another update of {repository} is running, waiting...")

        with self.locks.hold(repository):
            self._run_update(result, Deadline(self.config.get('update_timeout') or 0), emit)

        self._notify(result)
        return result

    def _run_update(self, result: UpdateResult, deadline: Deadline,
                    emit: ProgressCallback) -> None:
        repository, tag = result.repository, result.tag
        full_image = f"{repository}:{tag}"
        self.logger.info(f"Updating repo {full_image}...")

        selected, error = self._select_containers(repository, tag, deadline)
        if error:
            result.fail(*error)
            self.logger.error(result.error)
            emit('update_failed', {'error': result.error})
            return

        result.selected = [c.get('Id', '') for c in selected]
        if not selected:
            self.logger.info(f"No containers should be updated with image {full_image}, skipped")
            emit('nothing_to_update', {})
            return

        emit('containers_selected', {'containers': [_container_name(c) for c in selected]})

        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would pull {full_image}")
            for container in selected:
                self.logger.info(
                    f"[DRY RUN] Would recreate container {_container_name(container)} "
                    f"with image {image_for_tag(repository, tag)}"
                )
            return

        emit('pulling', {})
        error = self._pull_image(repository, tag, deadline, result)
        if error:
            result.fail(*error)
            self.logger.error(result.error)
            emit('update_failed', {'error': result.error})
            return
        emit('pulled', {'seconds': result.pull_seconds})

        self.logger.info(f"Restarting {len(selected)} container(s)...")
        for container in selected:
            emit('recreating', {'container': _container_name(container)})
            outcome = self._recreate_container(container, repository, tag, deadline)
            result.outcomes.append(outcome)
            if not outcome.ok:
                result.fail(outcome.error_kind, outcome.error)
                self.logger.error(result.error)
                skipped = len(selected) - len(result.outcomes)
                if skipped:
                    self.logger.warning(f"{skipped} selected container(s) left on the old image")
                emit('update_failed', {'error': result.error, 'container': outcome.name})
                return
            emit('recreated', {'container': outcome.name, 'new_id': outcome.new_container_id})

        self.logger.info(f"Updating containers for repo {full_image} done!")

    # ── Selector ──────────────────────────────────────────────────

    def _select_containers(self, repository: str, tag: str, deadline: Deadline
                           ) -> Tuple[List[Dict[str, Any]], Optional[Tuple[str, str]]]:
        """Return (containers to update, error).

        Containers come back in runtime listing order.  A tag that fails to
        parse only excludes its own container.
        """
        try:
            containers = self.docker.list_containers(timeout=deadline.timeout())
        except DeadlineExceeded as e:
            return [], (ERR_TIMEOUT, f"get containers list error: {e}")
        except (DockerAPIError, OSError) as e:
            return [], (ERR_ENUMERATION, f"get containers list error: {e}")

        to_update = []
        container_images = []
        for container in containers:
            container_image = container.get('Image', '')
            container_images.append(container_image)

            c_repo, c_tag = split_image_ref(container_image)
            if c_repo != repository:
                continue

            try:
                update = should_update(c_tag, tag)
            except InvalidVersion as e:
                self.logger.error(
                    f"Error parsing tags of container {_container_name(container)} "
                    f"({c_tag} -> {tag}): {e}"
                )
                continue

            if update:
                to_update.append(container)
                self.logger.info(f"To update {_container_name(container)}: {c_repo}:{c_tag} -> {tag}")
            else:
                self.logger.debug(f"Not updating {_container_name(container)}: {c_repo}:{c_tag} vs {tag}")

        if container_images:
            self.logger.info(f"Existing containers images: {', '.join(container_images)}")

        return to_update, None

    # ── Fetcher ───────────────────────────────────────────────────

    def _pull_image(self, repository: str, tag: str, deadline: Deadline,
                    result: UpdateResult) -> Optional[Tuple[str, str]]:
        """Pull repository:tag to completion.  Returns an error tuple or None."""
        full_image = f"{repository}:{tag}"
        try:
            reference = normalize_reference(full_image)
        except InvalidReference as e:
            return ERR_REFERENCE, f"parse container name {full_image} error: {e}"

        self.logger.info(f"Pulling repo {full_image}...")
        pull_start = time.monotonic()
        try:
            self.docker.pull_image(reference.name, reference.tag or tag,
                                   timeout=deadline.timeout(PULL_TIMEOUT))
        except DeadlineExceeded as e:
            return ERR_TIMEOUT, f"pull image {full_image} error: {e}"
        except (DockerAPIError, OSError) as e:
            return ERR_PULL, f"pull image {full_image} error: {e}"

        result.pull_seconds = round(time.monotonic() - pull_start, 3)
        self.logger.info(f"Repo {full_image} pulled in {result.pull_seconds}s")
        return None

    # ── Recreator ─────────────────────────────────────────────────

    def _build_create_config(self, container_info: Dict[str, Any], image: str
                             ) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
        """Build the create body for a replacement of *container_info*.

        The inspected config is kept as-is except for ``Image``.  Docker
        only accepts one endpoint at create time, so the primary network
        goes into ``NetworkingConfig`` and the rest are returned to be
        connected before the container starts.

        Returns:
            Tuple of (create body, {network name: endpoint config} to connect after creation)
        """
        create_config: Dict[str, Any] = copy.deepcopy(container_info.get('Config') or {})
        create_config['Image'] = image

        host_config = container_info.get('HostConfig')
        if host_config:
            create_config['HostConfig'] = copy.deepcopy(host_config)

        networks = (container_info.get('NetworkSettings') or {}).get('Networks') or {}
        extra_networks: Dict[str, Dict[str, Any]] = {}
        if networks:
            network_mode = (host_config or {}).get('NetworkMode') or 'default'
            if network_mode in networks:
                primary = network_mode
            elif network_mode == 'default' and 'bridge' in networks:
                # Docker reports the default bridge as 'default' in NetworkMode
                primary = 'bridge'
            else:
                primary = next(iter(networks))
            create_config['NetworkingConfig'] = {
                'EndpointsConfig': {primary: copy.deepcopy(networks[primary])}
            }
            extra_networks = {
                name: copy.deepcopy(endpoint) for name, endpoint in networks.items()
                if name != primary
            }

        return create_config, extra_networks

    def _recreate_container(self, container: Dict[str, Any], repository: str,
                            tag: str, deadline: Deadline) -> ContainerOutcome:
        """Replace one container with a copy running repository:tag.

        Inspect, force-remove, create under the same name, start, then
        reclaim the old image.  Never raises; the returned outcome records
        the last state reached and the error, if any.
        """
        container_id = container.get('Id', '')
        new_image = image_for_tag(repository, tag)
        outcome = ContainerOutcome(
            container_id=container_id,
            name=_container_name(container),
            old_image=container.get('Image', ''),
            new_image=new_image,
        )

        def failed(message: str, err: Exception) -> ContainerOutcome:
            outcome.error_kind = ERR_TIMEOUT if isinstance(err, DeadlineExceeded) else ERR_RECREATION
            outcome.error = f"{message} error: {err}"
            return outcome

        try:
            container_info = self.docker.inspect_container(container_id, timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            return failed(f"inspect container {container_id}", e)
        outcome.state = STATE_INSPECTED
        outcome.name = (container_info.get('Name') or outcome.name).lstrip('/')
        prev_image_id = container_info.get('Image', '')

        create_config, extra_networks = self._build_create_config(container_info, new_image)

        try:
            self.docker.remove_container(container_id, force=True, timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            return failed(f"remove container {container_id}", e)
        outcome.state = STATE_REMOVED
        self.logger.info(f"Removed container {outcome.name} ({container_id[:12]})")

        try:
            new_id = self.docker.create_container(outcome.name, create_config,
                                                  timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            failed("create new container", e)
            self._restore_container(container_info, outcome)
            return outcome
        outcome.state = STATE_CREATED
        outcome.new_container_id = new_id

        try:
            for network, endpoint_config in extra_networks.items():
                self.docker.connect_network(network, new_id, endpoint_config,
                                            timeout=deadline.timeout())
            self.docker.start_container(new_id, timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            failed("start new container", e)
            self._restore_container(container_info, outcome)
            return outcome
        outcome.state = STATE_STARTED
        self.logger.info(f"Started container {outcome.name} ({new_id[:12]}) with image {new_image}")

        if self.config.get('cleanup_old_images'):
            self._reclaim_image(prev_image_id, new_id, outcome, deadline)

        return outcome

    def _reclaim_image(self, prev_image_id: str, new_container_id: str,
                       outcome: ContainerOutcome, deadline: Deadline) -> None:
        """Remove the previous image if the new container runs a different one."""
        try:
            new_info = self.docker.inspect_container(new_container_id, timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            self.logger.warning(f"Could not inspect new container {outcome.name}: {e}")
            return

        if not prev_image_id or new_info.get('Image') == prev_image_id:
            return

        self.logger.info(f"Clearing previous image {prev_image_id[:19]} of {outcome.name}...")
        try:
            removed = self.docker.remove_image(prev_image_id, timeout=deadline.timeout())
        except (DeadlineExceeded, DockerAPIError, OSError) as e:
            self.logger.error(f"Remove previous image error: {e}")
            return

        for entry in removed:
            if entry.get('Untagged'):
                self.logger.info(f" - untagged: {entry['Untagged']}")
            if entry.get('Deleted'):
                self.logger.info(f" - deleted: {entry['Deleted']}")
        outcome.image_reclaimed = True
        outcome.state = STATE_IMAGE_RECLAIMED

    def _restore_container(self, container_info: Dict[str, Any],
                           outcome: ContainerOutcome) -> None:
        """Best-effort recreation of the removed original container.

        Runs after create/start of the replacement failed, on the image the
        original was running.  Rollback calls use their own timeouts since
        the request deadline may be what failed.  The outcome keeps its
        error either way; only ``restored`` and ``state`` change.
        """
        if not self.config.get('restore_on_failure'):
            outcome.state = STATE_FAILED
            self.logger.warning(f"Container {outcome.name} was removed and not recreated")
            return

        self.logger.info(f"Rolling back container {outcome.name}...")
        original_image = (container_info.get('Config') or {}).get('Image') or outcome.old_image
        try:
            if outcome.new_container_id:
                self.docker.remove_container(outcome.new_container_id, force=True,
                                             timeout=DEFAULT_TIMEOUT)
            self._repoint_reference(original_image, container_info.get('Image', ''), outcome)
            create_config, extra_networks = self._build_create_config(container_info, original_image)
            restored_id = self.docker.create_container(outcome.name, create_config,
                                                       timeout=DEFAULT_TIMEOUT)
            for network, endpoint_config in extra_networks.items():
                self.docker.connect_network(network, restored_id, endpoint_config,
                                            timeout=DEFAULT_TIMEOUT)
            self.docker.start_container(restored_id, timeout=DEFAULT_TIMEOUT)
        except (DockerAPIError, OSError) as e:
            outcome.state = STATE_FAILED
            self.logger.error(
                f"Rollback of {outcome.name} failed ({e}); the container is gone, "
                f"retry the update or recreate it manually"
            )
            return

        outcome.state = STATE_RESTORED
        outcome.restored = True
        outcome.new_container_id = restored_id
        self.logger.info(f"Restored container {outcome.name} on {original_image}")

    def _repoint_reference(self, original_image: str, prev_image_id: str,
                           outcome: ContainerOutcome) -> None:
        """Tag *prev_image_id* as *original_image* again if the pull moved it.

        Only matters when the original reference is the one just pulled
        (containers tracking ``latest``); pinned tags still resolve to the
        old image.
        """
        if not prev_image_id:
            return
        try:
            original = normalize_reference(original_image)
            pulled = normalize_reference(outcome.new_image)
        except InvalidReference:
            return
        if original.digest or original.name != pulled.name:
            return
        original_tag = original.tag or LATEST_TAG
        if original_tag != (pulled.tag or LATEST_TAG):
            return

        self.docker.tag_image(prev_image_id, original.name, original_tag, timeout=DEFAULT_TIMEOUT)
        self.logger.info(f"Re-tagged {original.name}:{original_tag} to previous image {prev_image_id[:19]}")

    def _notify(self, result: UpdateResult) -> None:
        if result.dry_run or result.error_kind == ERR_VALIDATION:
            return
        if result.ok and not result.updated:
            return
        send_notifications(
            self.config.get('notifications'),
            repository=result.repository, tag=result.tag,
            event=EVENT_APPLIED if result.ok else EVENT_FAILED,
            containers=[o.name for o in result.outcomes],
            error=result.error,
        )


def _container_name(container: Dict[str, Any]) -> str:
    """Name of a container from a list or inspect dict, without the '/' prefix."""
    name = container.get('Name')
    if not name:
        names = container.get('Names') or []
        name = names[0] if names else container.get('Id', '')[:12]
    return name.lstrip('/')


def create_updater(config_file: Optional[str] = None,
                   log_level: str = "INFO",
                   dry_run: bool = False) -> ContainerUpdater:
    """Build the runtime client once and wrap it in a ContainerUpdater.

    Raises if the config is invalid or the Docker daemon is unreachable;
    both are fatal at startup.
    """
    logger = setup_logging(log_level)
    config = load_config(config_file)
    if dry_run:
        config['dry_run'] = True

    docker = DockerClient(socket_path_from_host(config.get('docker_host')))
    docker.ping()
    logger.info(f"Connected to Docker daemon at {docker.socket_path}")
    return ContainerUpdater(docker, config, logger)


def main():
    parser = argparse.ArgumentParser(
        description='Recreate running containers of a repository on a new image tag'
    )
    parser.add_argument('repository', help='Repository name without tag, e.g. user/app')
    parser.add_argument('tag', help="New tag: 'latest' or a semantic version")
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to configuration JSON file (env: CONFIG_FILE, optional)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Show what would be done without making any changes (env: DRY_RUN)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )

    args = parser.parse_args()

    try:
        updater = create_updater(args.config, args.log_level, args.dry_run)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    result = updater.apply_update(args.repository, args.tag)
    print(json.dumps(result.to_dict(), indent=2))
    sys.exit(0 if result.ok else 1)


if __name__ == '__main__':
    main()

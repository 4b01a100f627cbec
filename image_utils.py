"""Image reference helpers.

Splits container image references into repository and tag, and normalizes
``repository:tag`` strings into canonical, fully-qualified references the
way the Docker daemon does (``app:1.0`` -> ``docker.io/library/app:1.0``).
"""

import re
from typing import Optional, Tuple

from version_utils import LATEST_TAG

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
NAME_TOTAL_LENGTH_MAX = 255

_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = _DOMAIN_COMPONENT + r"(?:\." + _DOMAIN_COMPONENT + r")*(?::[0-9]+)?"
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*"
_NAME = r"(?:" + _DOMAIN + r"/)?" + _PATH_COMPONENT + r"(?:/" + _PATH_COMPONENT + r")*"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"

REFERENCE_RE = re.compile(
    r"^(" + _NAME + r")(?::(" + _TAG + r"))?(?:@(" + _DIGEST + r"))?$"
)
_ANCHORED_IDENTIFIER = re.compile(r"^[a-f0-9]{64}$")


class InvalidReference(ValueError):
    """Raised when an image reference cannot be parsed."""


def split_image_ref(image: str) -> Tuple[str, str]:
    """Split an image reference into (repository, tag).

    The tag separator is the last ``:`` after the last ``/`` so that a
    registry port (``localhost:5000/app``) is kept in the repository.
    A ``@digest`` qualifier is dropped.  A missing tag means ``latest``.
    """
    at_pos = image.find("@")
    if at_pos != -1:
        image = image[:at_pos]

    last_slash = image.rfind("/")
    last_colon = image.rfind(":")
    if last_colon > last_slash:
        repo, tag = image[:last_colon], image[last_colon + 1:]
    else:
        repo, tag = image, ""

    return repo, tag or LATEST_TAG


def image_for_tag(repository: str, tag: str) -> str:
    """Image field for a recreated container.

    Containers tracking ``latest`` reference the bare repository name.
    """
    if tag == LATEST_TAG:
        return repository
    return f"{repository}:{tag}"


def _split_domain(name: str) -> Tuple[str, str]:
    parts = name.split("/", 1)
    if len(parts) == 1 or not (
        "." in parts[0] or ":" in parts[0] or parts[0] == "localhost"
    ):
        domain, remainder = DEFAULT_DOMAIN, name
    else:
        domain, remainder = parts

    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


class NormalizedReference:
    """A canonical image reference: domain, path, optional tag and digest."""

    def __init__(self, domain: str, path: str, tag: Optional[str] = None,
                 digest: Optional[str] = None):
        self.domain = domain
        self.path = path
        self.tag = tag
        self.digest = digest

    @property
    def name(self) -> str:
        return f"{self.domain}/{self.path}"

    def __str__(self):
        text = self.name
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text

    def __repr__(self):
        return f"NormalizedReference({str(self)!r})"


def normalize_reference(ref: str) -> NormalizedReference:
    """Parse *ref* and fill in the default registry and namespace.

    Raises InvalidReference for anything the daemon would reject.
    """
    if not ref:
        raise InvalidReference("repository name must have at least one component")
    if _ANCHORED_IDENTIFIER.match(ref):
        raise InvalidReference(
            f"invalid repository name ({ref}), "
            f"cannot specify 64-byte hexadecimal strings"
        )

    domain, remainder = _split_domain(ref)
    # Only the repository path must be lowercase; tags may be mixed case
    path = remainder.split("@", 1)[0].split(":", 1)[0]
    if path != path.lower():
        raise InvalidReference("repository name must be lowercase")

    match = REFERENCE_RE.match(f"{domain}/{remainder}")
    if not match:
        raise InvalidReference(f"invalid reference format: {ref}")

    name, tag, digest = match.group(1), match.group(2), match.group(3)
    if len(name) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReference(
            f"repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters"
        )

    return NormalizedReference(domain, name[len(domain) + 1:], tag, digest)

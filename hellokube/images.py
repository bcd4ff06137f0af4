from __future__ import annotations

import re
from dataclasses import dataclass

# registry/namespace/name, lowercase path components as accepted by docker.
NAME_RE = re.compile(r"^[a-z0-9]+(?:[._\-]+[a-z0-9]+)*(?::[0-9]+)?(?:/[a-z0-9]+(?:[._\-]+[a-z0-9]+)*)*$")
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")
DIGEST_RE = re.compile(r"^[a-z0-9]+:[a-f0-9]{32,}$")

DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageRef:
    """Immutable container image reference: ``name:tag[@digest]``."""

    name: str
    tag: str = DEFAULT_TAG
    digest: str | None = None

    def __post_init__(self) -> None:
        if not NAME_RE.match(self.name):
            raise ValueError(f"Invalid image name: {self.name!r}")
        if not TAG_RE.match(self.tag):
            raise ValueError(f"Invalid image tag: {self.tag!r}")
        if self.digest is not None and not DIGEST_RE.match(self.digest):
            raise ValueError(f"Invalid image digest: {self.digest!r}")

    def __str__(self) -> str:
        ref = f"{self.name}:{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def parse_image(ref: str) -> ImageRef:
    """Parse ``[registry[:port]/]name[:tag][@digest]`` into an ImageRef."""
    ref = ref.strip()
    if not ref:
        raise ValueError("Image reference must not be empty.")

    digest: str | None = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)

    # A colon after the last slash separates the tag; earlier colons belong to a registry port.
    name, tag = ref, DEFAULT_TAG
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = ref.rsplit(":", 1)

    return ImageRef(name=name, tag=tag, digest=digest)

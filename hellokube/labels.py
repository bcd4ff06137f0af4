from __future__ import annotations

import re
from typing import Mapping

LABEL_KEY_RE = re.compile(r"^([a-z0-9]([a-z0-9\-.]{0,251}[a-z0-9])?/)?[A-Za-z0-9]([A-Za-z0-9_.\-]{0,61}[A-Za-z0-9])?$")
LABEL_VALUE_RE = re.compile(r"^([A-Za-z0-9]([A-Za-z0-9_.\-]{0,61}[A-Za-z0-9])?)?$")

# Label stamped on every pod a deployment creates.
OWNER_LABEL = "hellokube.io/deployment"


def validate_labels(labels: Mapping[str, str]) -> None:
    for k, v in labels.items():
        if not LABEL_KEY_RE.match(k):
            raise ValueError(f"Invalid label key: {k!r}")
        if not isinstance(v, str) or not LABEL_VALUE_RE.match(v):
            raise ValueError(f"Invalid label value for {k!r}: {v!r}")


def selector_matches(selector: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    """True when every selector pair is present in ``labels``.

    An empty selector matches nothing; a Service or Deployment with no
    selector must not adopt every pod in the cluster.
    """
    if not selector:
        return False
    return set(selector.items()) <= set(labels.items())
